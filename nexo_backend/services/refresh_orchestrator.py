"""
Refresh orchestration: unprocessed turns -> extraction -> resolution ->
aggregation -> per-user persistence.

One ``RefreshOrchestrator.run`` call is one refresh cycle for one user. Steps
run strictly in sequence; all coordination with concurrent cycles happens in
the store (unique names, versioned aggregate rows).
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from nexo_backend.services.aggregation_engine import AggregationEngine
from nexo_backend.services.errors import (
    AuthFailure,
    NonFatalEnhancementFailure,
    ParseFailure,
    PartialPersistenceFailure,
)
from nexo_backend.services.extraction_contract import (
    ExtractedIssue,
    ExtractionResult,
    parse_extraction_response,
)
from nexo_backend.services.issue_aggregation import IssueContribution, canonical_pair, clamp_intensity
from nexo_backend.services.issue_resolver import IssueResolver
from nexo_backend.services.issue_store import IssueStore, StoredMessage
from nexo_backend.services.llm_client import LLMClient, LLMError, preview_text
from nexo_backend.services.prompt_manager import PromptManager, get_prompt_manager

logger = logging.getLogger(__name__)


class RefreshState(str, enum.Enum):
    IDLE = "Idle"
    FETCHING_MESSAGES = "FetchingMessages"
    EXTRACTING = "Extracting"
    RESOLVING_ISSUES = "ResolvingIssues"
    AGGREGATING = "Aggregating"
    PERSISTING_CONNECTIONS = "PersistingConnections"
    MARKING_PROCESSED = "MarkingProcessed"
    UPDATING_PROFILE = "UpdatingProfile"
    DONE = "Done"
    ABORTED = "Aborted"


@dataclass
class RefreshResult:
    success: bool
    state: RefreshState
    issues_extracted: int = 0
    connections_extracted: int = 0
    messages_processed: int = 0
    failed_issues: List[str] = field(default_factory=list)
    reflection_prompt: Optional[str] = None
    retryable: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.value,
            "issues_extracted": self.issues_extracted,
            "connections_extracted": self.connections_extracted,
            "messages_processed": self.messages_processed,
            "failed_issues": list(self.failed_issues),
            "reflection_prompt": self.reflection_prompt,
            "retryable": self.retryable,
            "message": self.message,
        }


def format_conversation(messages: Sequence[StoredMessage]) -> str:
    """Render turns as ``[ROLE]: content`` blocks separated by blank lines."""
    return "\n\n".join(f"[{message.role.upper()}]: {message.content}" for message in messages)


def _name_key(name: str) -> str:
    return (name or "").strip().lower()


class RefreshOrchestrator:
    def __init__(
        self,
        store: IssueStore,
        llm_client: LLMClient,
        resolver: IssueResolver,
        aggregation: AggregationEngine,
        prompt_manager: Optional[PromptManager] = None,
        reflection_enabled: bool = True,
    ):
        self.store = store
        self.llm_client = llm_client
        self.resolver = resolver
        self.aggregation = aggregation
        self.prompt_manager = prompt_manager or get_prompt_manager()
        self.reflection_enabled = reflection_enabled
        self.state = RefreshState.IDLE

    def _enter(self, state: RefreshState) -> None:
        logger.debug("Refresh state %s -> %s", self.state.value, state.value)
        self.state = state

    async def run(self, user_id: Optional[str]) -> RefreshResult:
        """
        Run one refresh cycle.

        Raises:
            AuthFailure: no authenticated user; nothing is read or written.
        """
        if not user_id:
            raise AuthFailure("Refresh requires an authenticated user")

        self.state = RefreshState.IDLE
        logger.info("Refresh started for user %s", user_id)

        self._enter(RefreshState.FETCHING_MESSAGES)
        messages = await self.store.get_unprocessed_messages(user_id)
        if not messages:
            self._enter(RefreshState.ABORTED)
            logger.info("Refresh for user %s: no new messages", user_id)
            return RefreshResult(success=True, state=self.state, message="No new messages to analyze")

        self._enter(RefreshState.EXTRACTING)
        try:
            extraction = await self._extract(messages)
        except ParseFailure as exc:
            self._enter(RefreshState.ABORTED)
            logger.error(
                "Refresh for user %s aborted, unparseable analysis: %s (response=%s)",
                user_id,
                exc,
                preview_text(exc.response_text),
            )
            return RefreshResult(
                success=False,
                state=self.state,
                retryable=True,
                message="Analysis could not be parsed",
            )
        except LLMError as exc:
            self._enter(RefreshState.ABORTED)
            logger.error("Refresh for user %s aborted, analysis call failed: %s", user_id, exc)
            return RefreshResult(
                success=False,
                state=self.state,
                retryable=True,
                message="Analysis is temporarily unavailable",
            )

        self._enter(RefreshState.RESOLVING_ISSUES)
        await self.resolver.load_candidates()
        resolved_ids: Dict[str, str] = {}
        persisted: List[ExtractedIssue] = []
        failed: List[str] = []

        for issue in extraction.issues:
            try:
                canonical_id = await self._persist_issue(user_id, issue)
            except PartialPersistenceFailure as exc:
                logger.warning("Refresh for user %s: %s", user_id, exc, exc_info=True)
                failed.append(issue.name)
                continue
            resolved_ids[_name_key(issue.name)] = canonical_id
            persisted.append(issue)

        self._enter(RefreshState.PERSISTING_CONNECTIONS)
        connections_saved = 0
        for connection in extraction.connections:
            issue_a = resolved_ids.get(_name_key(connection.issue_a))
            issue_b = resolved_ids.get(_name_key(connection.issue_b))
            if issue_a is None or issue_b is None:
                logger.debug(
                    "Dropping connection %r <-> %r: endpoint not in batch",
                    connection.issue_a,
                    connection.issue_b,
                )
                continue
            if issue_a == issue_b:
                logger.debug("Dropping self-connection on %s", issue_a)
                continue

            first, second = canonical_pair(issue_a, issue_b)
            try:
                await self.store.append_user_connection(
                    user_id, first, second, connection.type, connection.evidence
                )
                await self.aggregation.apply_connection(first, second)
            except Exception:
                logger.warning(
                    "Refresh for user %s: connection %s/%s skipped", user_id, first, second, exc_info=True
                )
                continue
            connections_saved += 1

        self._enter(RefreshState.MARKING_PROCESSED)
        await self.store.mark_processed([message.id for message in messages])

        self._enter(RefreshState.UPDATING_PROFILE)
        await self.store.touch_profile_refresh(user_id)

        reflection = None
        if self.reflection_enabled and persisted:
            try:
                reflection = await self._reflect(user_id, persisted)
            except NonFatalEnhancementFailure as exc:
                logger.warning("Refresh for user %s: %s", user_id, exc, exc_info=True)

        self._enter(RefreshState.DONE)
        logger.info(
            "Refresh for user %s done: %s issues, %s connections, %s messages, %s skipped",
            user_id,
            len(persisted),
            connections_saved,
            len(messages),
            len(failed),
        )
        return RefreshResult(
            success=True,
            state=self.state,
            issues_extracted=len(persisted),
            connections_extracted=connections_saved,
            messages_processed=len(messages),
            failed_issues=failed,
            reflection_prompt=reflection,
        )

    async def _extract(self, messages: Sequence[StoredMessage]) -> ExtractionResult:
        system = self.prompt_manager.render_prompt("issue_extraction_system")
        prompt = self.prompt_manager.render_prompt(
            "issue_extraction_user",
            {"conversation": format_conversation(messages)},
        )
        metadata = self.prompt_manager.get_prompt_metadata("issue_extraction_system")
        response = await self.llm_client.complete(
            prompt,
            system=system,
            max_tokens=metadata["max_tokens"],
            temperature=metadata["temperature"],
        )
        return parse_extraction_response(response)

    async def _persist_issue(self, user_id: str, issue: ExtractedIssue) -> str:
        """
        Raises:
            PartialPersistenceFailure: any step for this issue failed
        """
        try:
            resolved = await self.resolver.resolve(issue.name)

            await self.store.upsert_user_issue(
                user_id,
                resolved.canonical_id,
                issue.stance,
                clamp_intensity(issue.intensity),
                issue.confidence,
                issue.quotes,
            )

            self._enter(RefreshState.AGGREGATING)
            await self.aggregation.apply_issue_contribution(
                resolved.canonical_id,
                IssueContribution(stance=issue.stance, intensity=issue.intensity, confidence=issue.confidence),
            )
        except Exception as exc:
            raise PartialPersistenceFailure(f"issue {issue.name!r} skipped: {exc}") from exc
        self._enter(RefreshState.RESOLVING_ISSUES)
        return resolved.canonical_id

    async def _reflect(self, user_id: str, issues: Sequence[ExtractedIssue]) -> Optional[str]:
        try:
            return await self._generate_reflection(user_id, issues)
        except Exception as exc:
            raise NonFatalEnhancementFailure(f"reflection prompt skipped: {exc}") from exc

    async def _generate_reflection(self, user_id: str, issues: Sequence[ExtractedIssue]) -> Optional[str]:
        summary = "\n".join(f"{issue.name}: {issue.stance}" for issue in issues)
        prompt = self.prompt_manager.render_prompt("reflection_question", {"issues_summary": summary})
        metadata = self.prompt_manager.get_prompt_metadata("reflection_question")
        response = await self.llm_client.complete(
            prompt,
            max_tokens=metadata["max_tokens"],
            temperature=metadata["temperature"],
        )
        question = (response or "").strip()
        if not question:
            return None
        await self.store.save_reflection_prompt(user_id, question)
        return question
