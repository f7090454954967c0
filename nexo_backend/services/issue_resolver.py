"""Map extracted issue names to canonical issue identities."""

import logging
from dataclasses import dataclass
from typing import List, Optional

from nexo_backend.services.errors import CanonicalIssueConflict
from nexo_backend.services.issue_matching import IssueMatcher
from nexo_backend.services.issue_store import CanonicalIssueRecord, IssueStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedIssue:
    canonical_id: str
    created: bool


class IssueResolver:
    """
    Resolves names for one refresh batch.

    Candidates are fetched once by ``load_candidates``; issues created later
    in the batch are appended to that local list so subsequent names in the
    same batch can match them.
    """

    def __init__(self, store: IssueStore, matcher: IssueMatcher):
        self.store = store
        self.matcher = matcher
        self._candidates: Optional[List[CanonicalIssueRecord]] = None

    async def load_candidates(self) -> List[CanonicalIssueRecord]:
        self._candidates = list(await self.store.get_active_canonical_issues())
        return self._candidates

    async def resolve(self, name: str) -> ResolvedIssue:
        if self._candidates is None:
            await self.load_candidates()

        decision = await self.matcher.match(name, self._candidates)

        if decision.is_existing:
            record = self._find_local(decision.canonical_id)
            if record is not None:
                await self._record_alias(record, name)
            return ResolvedIssue(canonical_id=decision.canonical_id, created=False)

        return await self._create(name, decision.description)

    def _find_local(self, canonical_id: str) -> Optional[CanonicalIssueRecord]:
        for record in self._candidates or []:
            if record.id == canonical_id:
                return record
        return None

    async def _record_alias(self, record: CanonicalIssueRecord, name: str) -> None:
        lowered = name.strip().lower()
        if lowered == record.name.strip().lower():
            return
        if any(alias.strip().lower() == lowered for alias in record.aliases):
            return

        aliases = [*record.aliases, name.strip()]
        await self.store.update_canonical_issue_aliases(record.id, aliases)
        record.aliases = aliases
        logger.info("Alias '%s' recorded for canonical issue %s", name, record.id)

    async def _create(self, name: str, description: Optional[str]) -> ResolvedIssue:
        clean_name = name.strip()
        try:
            canonical_id = await self.store.create_canonical_issue(clean_name, description)
        except CanonicalIssueConflict:
            # Another cycle created the same name first.
            existing = await self.store.find_canonical_issue_by_name(clean_name)
            if existing is None:
                raise
            logger.warning("Canonical issue '%s' created concurrently, reusing %s", clean_name, existing.id)
            if self._find_local(existing.id) is None:
                self._candidates.append(existing)
            return ResolvedIssue(canonical_id=existing.id, created=False)

        self._candidates.append(
            CanonicalIssueRecord(id=canonical_id, name=clean_name, description=description, aliases=[])
        )
        return ResolvedIssue(canonical_id=canonical_id, created=True)
