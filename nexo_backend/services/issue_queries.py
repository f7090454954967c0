"""Issue query and serialization helpers for the read endpoints."""

from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from nexo_backend.models import (
    AggregateConnection,
    AggregateIssue,
    CanonicalIssue,
    Profile,
    UserConnection,
    UserIssue,
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


async def load_user_issues(db: AsyncSession, user_id: str) -> List[Tuple[UserIssue, CanonicalIssue]]:
    stmt = (
        select(UserIssue, CanonicalIssue)
        .join(CanonicalIssue, UserIssue.canonical_issue_id == CanonicalIssue.id)
        .where(UserIssue.user_id == user_id)
        .order_by(UserIssue.intensity.desc())
    )
    result = await db.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def load_user_connections(db: AsyncSession, user_id: str) -> List[Tuple[UserConnection, str, str]]:
    issue_a = aliased(CanonicalIssue)
    issue_b = aliased(CanonicalIssue)
    stmt = (
        select(UserConnection, issue_a.name, issue_b.name)
        .join(issue_a, UserConnection.issue_a_id == issue_a.id)
        .join(issue_b, UserConnection.issue_b_id == issue_b.id)
        .where(UserConnection.user_id == user_id)
        .order_by(UserConnection.created_at.desc())
    )
    result = await db.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def load_last_refresh_at(db: AsyncSession, user_id: str):
    result = await db.execute(select(Profile.last_refresh_at).where(Profile.id == user_id))
    return result.scalar_one_or_none()


async def load_aggregate_issues(db: AsyncSession) -> List[Tuple[AggregateIssue, CanonicalIssue]]:
    stmt = (
        select(AggregateIssue, CanonicalIssue)
        .join(CanonicalIssue, AggregateIssue.canonical_issue_id == CanonicalIssue.id)
        .where(CanonicalIssue.is_active.is_(True), CanonicalIssue.merged_into_id.is_(None))
        .order_by(AggregateIssue.energy_score.desc())
    )
    result = await db.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def load_aggregate_connections(db: AsyncSession) -> List[Tuple[AggregateConnection, str, str]]:
    issue_a = aliased(CanonicalIssue)
    issue_b = aliased(CanonicalIssue)
    stmt = (
        select(AggregateConnection, issue_a.name, issue_b.name)
        .join(issue_a, AggregateConnection.issue_a_id == issue_a.id)
        .join(issue_b, AggregateConnection.issue_b_id == issue_b.id)
        .order_by(AggregateConnection.total_weight.desc())
    )
    result = await db.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def load_causal_pairs(db: AsyncSession) -> Set[Tuple[str, str]]:
    """Issue pairs at least one user has described as causal."""
    stmt = (
        select(UserConnection.issue_a_id, UserConnection.issue_b_id)
        .where(UserConnection.connection_type == "causal")
        .distinct()
    )
    result = await db.execute(stmt)
    return {(str(a), str(b)) for a, b in result.all()}


def user_issue_to_payload(user_issue: UserIssue, canonical: CanonicalIssue) -> Dict[str, Any]:
    return {
        "id": str(user_issue.id),
        "canonical_issue_id": str(canonical.id),
        "name": canonical.name,
        "stance": user_issue.stance or "",
        "intensity": float(user_issue.intensity or 0.0),
        "confidence": user_issue.confidence or "",
        "quotes": list(user_issue.quotes or []),
        "updated_at": _iso(user_issue.updated_at),
    }


def user_connection_to_payload(connection: UserConnection, name_a: str, name_b: str) -> Dict[str, Any]:
    return {
        "id": str(connection.id),
        "issue_a_id": str(connection.issue_a_id),
        "issue_b_id": str(connection.issue_b_id),
        "issue_a": name_a,
        "issue_b": name_b,
        "connection_type": connection.connection_type,
        "evidence": connection.evidence or "",
        "created_at": _iso(connection.created_at),
    }


def aggregate_issue_to_payload(aggregate: AggregateIssue, canonical: CanonicalIssue) -> Dict[str, Any]:
    return {
        "canonical_issue_id": str(canonical.id),
        "name": canonical.name,
        "description": canonical.description,
        "total_users": int(aggregate.total_users or 0),
        "energy_score": float(aggregate.energy_score or 0.0),
        "consensus_score": float(aggregate.consensus_score or 0.0),
        "stance_histogram": dict(aggregate.stance_histogram or {}),
    }


def aggregate_connection_to_payload(connection: AggregateConnection, name_a: str, name_b: str) -> Dict[str, Any]:
    return {
        "id": str(connection.id),
        "issue_a_id": str(connection.issue_a_id),
        "issue_b_id": str(connection.issue_b_id),
        "issue_a": name_a,
        "issue_b": name_b,
        "total_weight": int(connection.total_weight or 0),
        "user_count": int(connection.user_count or 0),
    }


def serialize_rows(rows: Sequence[tuple], serializer) -> List[Dict[str, Any]]:
    return [serializer(*row) for row in rows]
