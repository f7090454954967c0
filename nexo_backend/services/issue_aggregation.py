"""Pure folds for the global issue and connection rollups.

Each function takes the current aggregate (or ``None`` when no row exists
yet) plus one contribution and returns the next aggregate. Nothing here
touches storage, so the folds can be checked for commutativity directly.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

CONFIDENCE_WEIGHTS = {
    "high": 1.0,
    "medium": 0.6,
    "low": 0.3,
}
DEFAULT_CONFIDENCE_WEIGHT = 0.5
STANCE_KEY_LENGTH = 50


@dataclass(frozen=True)
class IssueContribution:
    """One user's stance on one canonical issue, as folded into the rollup."""
    stance: str
    intensity: float
    confidence: str


@dataclass
class AggregateIssueState:
    canonical_issue_id: str
    total_users: int = 0
    energy_score: float = 0.0
    stance_histogram: Dict[str, int] = field(default_factory=dict)
    consensus_score: float = 0.0
    version: int = 0


@dataclass
class AggregateConnectionState:
    issue_a_id: str
    issue_b_id: str
    total_weight: int = 0
    user_count: int = 0
    version: int = 0


def confidence_weight(confidence: Any) -> float:
    if not isinstance(confidence, str):
        return DEFAULT_CONFIDENCE_WEIGHT
    return CONFIDENCE_WEIGHTS.get(confidence, DEFAULT_CONFIDENCE_WEIGHT)


def clamp_intensity(intensity: Any) -> float:
    """Coerce model-reported intensity into [0, 1]; unusable values count as 0."""
    try:
        value = float(intensity)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def contribution_weight(contribution: IssueContribution) -> float:
    return clamp_intensity(contribution.intensity) * confidence_weight(contribution.confidence)


def stance_bucket_key(stance: Optional[str]) -> str:
    return (stance or "")[:STANCE_KEY_LENGTH]


def compute_consensus(histogram: Dict[str, int]) -> float:
    """Share of stances in the most common bucket (1.0 = unanimous)."""
    counts = [int(count) for count in histogram.values()]
    total = sum(counts)
    if total <= 0:
        return 0.0
    return max(counts) / total


def fold_issue_contribution(
    existing: Optional[AggregateIssueState],
    canonical_issue_id: str,
    contribution: IssueContribution,
) -> AggregateIssueState:
    weight = contribution_weight(contribution)
    key = stance_bucket_key(contribution.stance)

    if existing is None:
        return AggregateIssueState(
            canonical_issue_id=canonical_issue_id,
            total_users=1,
            energy_score=weight,
            stance_histogram={key: 1},
            # A single contributor agrees with itself.
            consensus_score=1.0,
            version=1,
        )

    histogram = dict(existing.stance_histogram or {})
    histogram[key] = histogram.get(key, 0) + 1

    return replace(
        existing,
        total_users=existing.total_users + 1,
        energy_score=existing.energy_score + weight,
        stance_histogram=histogram,
        consensus_score=compute_consensus(histogram),
        version=existing.version + 1,
    )


def canonical_pair(issue_a_id: str, issue_b_id: str) -> Tuple[str, str]:
    """Order an unordered issue pair so (A, B) and (B, A) share one row."""
    a, b = str(issue_a_id), str(issue_b_id)
    return (a, b) if a < b else (b, a)


def fold_connection(
    existing: Optional[AggregateConnectionState],
    issue_a_id: str,
    issue_b_id: str,
) -> AggregateConnectionState:
    first, second = canonical_pair(issue_a_id, issue_b_id)

    if existing is None:
        return AggregateConnectionState(
            issue_a_id=first,
            issue_b_id=second,
            total_weight=1,
            user_count=1,
            version=1,
        )

    return replace(
        existing,
        total_weight=existing.total_weight + 1,
        user_count=existing.user_count + 1,
        version=existing.version + 1,
    )
