"""
Persistence interface for the refresh pipeline.

``IssueStore`` is everything the resolver, aggregation engine and refresh
orchestrator may do to storage. Each call is independent and retryable;
no multi-statement transaction spans calls. ``SqlAlchemyIssueStore`` is the
PostgreSQL implementation: it commits after every operation and rolls back
after any failed one.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from nexo_backend.models import (
    AggregateConnection,
    AggregateIssue,
    CanonicalIssue,
    Conversation,
    Message,
    Profile,
    ReflectionPrompt,
    UserConnection,
    UserIssue,
)
from nexo_backend.services.errors import CanonicalIssueConflict
from nexo_backend.services.issue_aggregation import (
    AggregateConnectionState,
    AggregateIssueState,
)

logger = logging.getLogger(__name__)


@dataclass
class StoredMessage:
    id: str
    role: str
    content: str
    created_at: Optional[datetime] = None


@dataclass
class CanonicalIssueRecord:
    id: str
    name: str
    description: Optional[str] = None
    aliases: List[str] = field(default_factory=list)


class IssueStore(ABC):
    """Storage operations consumed by the refresh pipeline."""

    @abstractmethod
    async def get_unprocessed_messages(self, user_id: str) -> List[StoredMessage]:
        """All of the user's turns not yet included in a refresh, oldest first."""

    @abstractmethod
    async def mark_processed(self, message_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def get_active_canonical_issues(self) -> List[CanonicalIssueRecord]:
        """Active, non-merged canonical issues."""

    @abstractmethod
    async def find_canonical_issue_by_name(self, name: str) -> Optional[CanonicalIssueRecord]:
        """Case-insensitive exact lookup on the primary name."""

    @abstractmethod
    async def create_canonical_issue(self, name: str, description: Optional[str] = None) -> str:
        """Insert a canonical issue and return its id.

        Raises:
            CanonicalIssueConflict: the name is already taken (case-insensitive).
        """

    @abstractmethod
    async def update_canonical_issue_aliases(self, issue_id: str, aliases: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def upsert_user_issue(
        self,
        user_id: str,
        canonical_issue_id: str,
        stance: str,
        intensity: float,
        confidence: str,
        quotes: Sequence[str],
    ) -> None:
        ...

    @abstractmethod
    async def get_aggregate_issue(self, canonical_issue_id: str) -> Optional[AggregateIssueState]:
        ...

    @abstractmethod
    async def put_aggregate_issue(self, state: AggregateIssueState, expected_version: Optional[int]) -> bool:
        """Write *state* if the stored version still equals *expected_version*.

        ``expected_version=None`` means "create"; returns ``False`` when a
        concurrent writer got there first.
        """

    @abstractmethod
    async def append_user_connection(
        self,
        user_id: str,
        issue_a_id: str,
        issue_b_id: str,
        connection_type: str,
        evidence: str,
    ) -> None:
        ...

    @abstractmethod
    async def get_aggregate_connection(self, issue_a_id: str, issue_b_id: str) -> Optional[AggregateConnectionState]:
        ...

    @abstractmethod
    async def put_aggregate_connection(self, state: AggregateConnectionState, expected_version: Optional[int]) -> bool:
        """Same compare-and-swap contract as ``put_aggregate_issue``."""

    @abstractmethod
    async def touch_profile_refresh(self, user_id: str) -> None:
        """Stamp last refresh time and bump the refresh counter."""

    @abstractmethod
    async def save_reflection_prompt(self, user_id: str, prompt_text: str) -> None:
        ...


def _to_record(issue: CanonicalIssue) -> CanonicalIssueRecord:
    return CanonicalIssueRecord(
        id=str(issue.id),
        name=issue.name,
        description=issue.description,
        aliases=list(issue.aliases or []),
    )


class SqlAlchemyIssueStore(IssueStore):
    """
    ``IssueStore`` over one ``AsyncSession``.

    Every operation runs in its own unit: committed on success, rolled back
    on any database error so the next call starts from a clean session.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _unit(self):
        try:
            yield
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

    async def get_unprocessed_messages(self, user_id: str) -> List[StoredMessage]:
        stmt = (
            select(Message)
            .join(Conversation, Message.conversation_id == Conversation.id)
            .where(Conversation.user_id == user_id, Message.included_in_refresh.is_(False))
            .order_by(Message.created_at.asc())
        )
        async with self._unit():
            result = await self.db.execute(stmt)
            return [
                StoredMessage(id=str(m.id), role=m.role, content=m.content, created_at=m.created_at)
                for m in result.scalars().all()
            ]

    async def mark_processed(self, message_ids: Sequence[str]) -> None:
        if not message_ids:
            return
        ids = [uuid.UUID(str(mid)) for mid in message_ids]
        async with self._unit():
            await self.db.execute(
                update(Message).where(Message.id.in_(ids)).values(included_in_refresh=True)
            )

    async def get_active_canonical_issues(self) -> List[CanonicalIssueRecord]:
        stmt = (
            select(CanonicalIssue)
            .where(CanonicalIssue.is_active.is_(True), CanonicalIssue.merged_into_id.is_(None))
            .order_by(CanonicalIssue.created_at.asc())
        )
        async with self._unit():
            result = await self.db.execute(stmt)
            return [_to_record(issue) for issue in result.scalars().all()]

    async def find_canonical_issue_by_name(self, name: str) -> Optional[CanonicalIssueRecord]:
        stmt = select(CanonicalIssue).where(func.lower(CanonicalIssue.name) == name.strip().lower()).limit(1)
        async with self._unit():
            result = await self.db.execute(stmt)
            issue = result.scalar_one_or_none()
            return _to_record(issue) if issue is not None else None

    async def create_canonical_issue(self, name: str, description: Optional[str] = None) -> str:
        issue_id = uuid.uuid4()
        try:
            async with self._unit():
                self.db.add(CanonicalIssue(id=issue_id, name=name, description=description, aliases=[]))
        except IntegrityError as exc:
            raise CanonicalIssueConflict(name) from exc
        logger.info("Canonical issue created: %s (%s)", issue_id, name)
        return str(issue_id)

    async def update_canonical_issue_aliases(self, issue_id: str, aliases: Sequence[str]) -> None:
        async with self._unit():
            await self.db.execute(
                update(CanonicalIssue)
                .where(CanonicalIssue.id == uuid.UUID(str(issue_id)))
                .values(aliases=list(aliases), updated_at=func.now())
            )

    async def upsert_user_issue(
        self,
        user_id: str,
        canonical_issue_id: str,
        stance: str,
        intensity: float,
        confidence: str,
        quotes: Sequence[str],
    ) -> None:
        values = {
            "stance": stance,
            "intensity": intensity,
            "confidence": confidence,
            "quotes": list(quotes),
            "updated_at": func.now(),
        }
        stmt = pg_insert(UserIssue).values(
            id=uuid.uuid4(),
            user_id=user_id,
            canonical_issue_id=uuid.UUID(str(canonical_issue_id)),
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserIssue.user_id, UserIssue.canonical_issue_id],
            set_=values,
        )
        async with self._unit():
            await self.db.execute(stmt)

    async def get_aggregate_issue(self, canonical_issue_id: str) -> Optional[AggregateIssueState]:
        stmt = select(AggregateIssue).where(AggregateIssue.canonical_issue_id == uuid.UUID(str(canonical_issue_id)))
        async with self._unit():
            result = await self.db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return AggregateIssueState(
                canonical_issue_id=str(row.canonical_issue_id),
                total_users=row.total_users,
                energy_score=row.energy_score,
                stance_histogram=dict(row.stance_histogram or {}),
                consensus_score=row.consensus_score,
                version=row.version,
            )

    async def put_aggregate_issue(self, state: AggregateIssueState, expected_version: Optional[int]) -> bool:
        canonical_uuid = uuid.UUID(str(state.canonical_issue_id))
        if expected_version is None:
            try:
                async with self._unit():
                    self.db.add(
                        AggregateIssue(
                            canonical_issue_id=canonical_uuid,
                            total_users=state.total_users,
                            energy_score=state.energy_score,
                            stance_histogram=state.stance_histogram,
                            consensus_score=state.consensus_score,
                            version=state.version,
                        )
                    )
            except IntegrityError:
                return False
            return True

        async with self._unit():
            result = await self.db.execute(
                update(AggregateIssue)
                .where(
                    AggregateIssue.canonical_issue_id == canonical_uuid,
                    AggregateIssue.version == expected_version,
                )
                .values(
                    total_users=state.total_users,
                    energy_score=state.energy_score,
                    stance_histogram=state.stance_histogram,
                    consensus_score=state.consensus_score,
                    version=state.version,
                    updated_at=func.now(),
                )
            )
        return result.rowcount == 1

    async def append_user_connection(
        self,
        user_id: str,
        issue_a_id: str,
        issue_b_id: str,
        connection_type: str,
        evidence: str,
    ) -> None:
        async with self._unit():
            self.db.add(
                UserConnection(
                    id=uuid.uuid4(),
                    user_id=user_id,
                    issue_a_id=uuid.UUID(str(issue_a_id)),
                    issue_b_id=uuid.UUID(str(issue_b_id)),
                    connection_type=connection_type,
                    evidence=evidence,
                )
            )

    async def get_aggregate_connection(self, issue_a_id: str, issue_b_id: str) -> Optional[AggregateConnectionState]:
        stmt = select(AggregateConnection).where(
            AggregateConnection.issue_a_id == uuid.UUID(str(issue_a_id)),
            AggregateConnection.issue_b_id == uuid.UUID(str(issue_b_id)),
        )
        async with self._unit():
            result = await self.db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return AggregateConnectionState(
                issue_a_id=str(row.issue_a_id),
                issue_b_id=str(row.issue_b_id),
                total_weight=row.total_weight,
                user_count=row.user_count,
                version=row.version,
            )

    async def put_aggregate_connection(self, state: AggregateConnectionState, expected_version: Optional[int]) -> bool:
        issue_a = uuid.UUID(str(state.issue_a_id))
        issue_b = uuid.UUID(str(state.issue_b_id))
        if expected_version is None:
            try:
                async with self._unit():
                    self.db.add(
                        AggregateConnection(
                            id=uuid.uuid4(),
                            issue_a_id=issue_a,
                            issue_b_id=issue_b,
                            total_weight=state.total_weight,
                            user_count=state.user_count,
                            version=state.version,
                        )
                    )
            except IntegrityError:
                return False
            return True

        async with self._unit():
            result = await self.db.execute(
                update(AggregateConnection)
                .where(
                    AggregateConnection.issue_a_id == issue_a,
                    AggregateConnection.issue_b_id == issue_b,
                    AggregateConnection.version == expected_version,
                )
                .values(
                    total_weight=state.total_weight,
                    user_count=state.user_count,
                    version=state.version,
                    updated_at=func.now(),
                )
            )
        return result.rowcount == 1

    async def touch_profile_refresh(self, user_id: str) -> None:
        stmt = pg_insert(Profile).values(id=user_id, last_refresh_at=func.now(), total_refreshes=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Profile.id],
            set_={
                "last_refresh_at": func.now(),
                "total_refreshes": Profile.total_refreshes + 1,
            },
        )
        async with self._unit():
            await self.db.execute(stmt)

    async def save_reflection_prompt(self, user_id: str, prompt_text: str) -> None:
        async with self._unit():
            self.db.add(ReflectionPrompt(id=uuid.uuid4(), user_id=user_id, prompt_text=prompt_text))
