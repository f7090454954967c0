"""Apply aggregation folds to the shared store with compare-and-swap retry."""

import logging

from nexo_backend.services.errors import StaleAggregateError
from nexo_backend.services.issue_aggregation import (
    AggregateConnectionState,
    AggregateIssueState,
    IssueContribution,
    canonical_pair,
    fold_connection,
    fold_issue_contribution,
)
from nexo_backend.services.issue_store import IssueStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


class AggregationEngine:
    def __init__(self, store: IssueStore, max_retries: int = DEFAULT_MAX_RETRIES):
        self.store = store
        self.max_retries = max(1, int(max_retries))

    async def apply_issue_contribution(
        self,
        canonical_issue_id: str,
        contribution: IssueContribution,
    ) -> AggregateIssueState:
        """
        Fold one user's stance into the issue rollup.

        Raises:
            StaleAggregateError: every attempt lost to a concurrent writer.
        """
        for attempt in range(1, self.max_retries + 1):
            existing = await self.store.get_aggregate_issue(canonical_issue_id)
            updated = fold_issue_contribution(existing, canonical_issue_id, contribution)
            expected = existing.version if existing is not None else None

            if await self.store.put_aggregate_issue(updated, expected):
                return updated

            logger.warning(
                "Aggregate issue %s changed underneath us (attempt %s/%s)",
                canonical_issue_id,
                attempt,
                self.max_retries,
            )

        raise StaleAggregateError(
            f"Aggregate issue {canonical_issue_id} not updated after {self.max_retries} attempts"
        )

    async def apply_connection(self, issue_a_id: str, issue_b_id: str) -> AggregateConnectionState:
        """Fold one connection; ``(a, b)`` and ``(b, a)`` hit the same row."""
        first, second = canonical_pair(issue_a_id, issue_b_id)

        for attempt in range(1, self.max_retries + 1):
            existing = await self.store.get_aggregate_connection(first, second)
            updated = fold_connection(existing, first, second)
            expected = existing.version if existing is not None else None

            if await self.store.put_aggregate_connection(updated, expected):
                return updated

            logger.warning(
                "Aggregate connection %s/%s changed underneath us (attempt %s/%s)",
                first,
                second,
                attempt,
                self.max_retries,
            )

        raise StaleAggregateError(
            f"Aggregate connection {first}/{second} not updated after {self.max_retries} attempts"
        )
