"""
Issue matching strategies.

Given an extracted issue name and the current canonical issues, decide
whether the name denotes one of them or is genuinely new. Two strategies:

- ``SemanticIssueMatcher`` asks the model, with a numbered candidate list.
- ``LexicalIssueMatcher`` uses normalized Levenshtein similarity.

Both short-circuit on a case-insensitive exact hit against a primary name
or alias, so known aliases never cost a model call.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from nexo_backend.services.errors import MatchAmbiguity
from nexo_backend.services.extraction_contract import find_first_json_object
from nexo_backend.services.issue_store import CanonicalIssueRecord
from nexo_backend.services.llm_client import LLMClient, preview_text
from nexo_backend.services.prompt_manager import PromptManager, get_prompt_manager

logger = logging.getLogger(__name__)

DEFAULT_LEXICAL_THRESHOLD = 0.8


@dataclass
class MatchDecision:
    """Either ``existing`` (with the candidate's id) or ``new``."""
    kind: str
    canonical_id: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def existing(cls, canonical_id: str) -> "MatchDecision":
        return cls(kind="existing", canonical_id=canonical_id)

    @classmethod
    def new(cls, description: Optional[str] = None) -> "MatchDecision":
        return cls(kind="new", description=description)

    @property
    def is_existing(self) -> bool:
        return self.kind == "existing"


def find_exact_match(name: str, candidates: Sequence[CanonicalIssueRecord]) -> Optional[CanonicalIssueRecord]:
    needle = name.strip().lower()
    if not needle:
        return None
    for candidate in candidates:
        if candidate.name.strip().lower() == needle:
            return candidate
        if any(alias.strip().lower() == needle for alias in candidate.aliases):
            return candidate
    return None


class IssueMatcher:
    """Base strategy; subclasses implement ``_match_inexact``."""

    async def match(self, name: str, candidates: Sequence[CanonicalIssueRecord]) -> MatchDecision:
        if not candidates:
            return MatchDecision.new()

        exact = find_exact_match(name, candidates)
        if exact is not None:
            return MatchDecision.existing(exact.id)

        return await self._match_inexact(name, candidates)

    async def _match_inexact(self, name: str, candidates: Sequence[CanonicalIssueRecord]) -> MatchDecision:
        raise NotImplementedError


class LexicalIssueMatcher(IssueMatcher):
    def __init__(self, threshold: float = DEFAULT_LEXICAL_THRESHOLD):
        self.threshold = threshold

    async def _match_inexact(self, name: str, candidates: Sequence[CanonicalIssueRecord]) -> MatchDecision:
        needle = name.strip().lower()
        best_id = None
        best_score = 0.0

        for candidate in candidates:
            for label in [candidate.name, *candidate.aliases]:
                score = Levenshtein.normalized_similarity(needle, label.strip().lower())
                if score > best_score:
                    best_score = score
                    best_id = candidate.id

        if best_id is not None and best_score > self.threshold:
            logger.debug("Lexical match '%s' -> %s (%.3f)", name, best_id, best_score)
            return MatchDecision.existing(best_id)
        return MatchDecision.new()


def format_candidates(candidates: Sequence[CanonicalIssueRecord]) -> str:
    lines = []
    for index, candidate in enumerate(candidates, start=1):
        line = f'{index}. "{candidate.name}"'
        if candidate.description:
            line += f" - {candidate.description}"
        if candidate.aliases:
            line += f" (aliases: {', '.join(candidate.aliases)})"
        lines.append(line)
    return "\n".join(lines)


def parse_match_response(text: str, candidates: Sequence[CanonicalIssueRecord]) -> MatchDecision:
    """Interpret a matching reply.

    Raises:
        MatchAmbiguity: no JSON, unknown verdict, or index out of range.
    """
    block = find_first_json_object(text)
    if block is None:
        raise MatchAmbiguity("No JSON object in matching response")
    try:
        payload: Dict[str, Any] = json.loads(block)
    except json.JSONDecodeError as exc:
        raise MatchAmbiguity(f"Matching response is not valid JSON: {exc}") from exc

    verdict = str(payload.get("match", "")).strip().lower()
    if verdict == "new":
        description = payload.get("description")
        return MatchDecision.new(str(description) if description else None)

    if verdict == "existing":
        index = payload.get("index")
        # bool is an int subclass
        if isinstance(index, bool) or not isinstance(index, int):
            raise MatchAmbiguity(f"Matching index is not an integer: {index!r}")
        if not 1 <= index <= len(candidates):
            raise MatchAmbiguity(f"Matching index {index} outside 1..{len(candidates)}")
        return MatchDecision.existing(candidates[index - 1].id)

    raise MatchAmbiguity(f"Unknown match verdict: {verdict!r}")


class SemanticIssueMatcher(IssueMatcher):
    def __init__(self, llm_client: LLMClient, prompt_manager: Optional[PromptManager] = None):
        self.llm_client = llm_client
        self.prompt_manager = prompt_manager or get_prompt_manager()

    async def _match_inexact(self, name: str, candidates: Sequence[CanonicalIssueRecord]) -> MatchDecision:
        prompt = self.prompt_manager.render_prompt(
            "issue_matching",
            {"issue_name": name, "candidates": format_candidates(candidates)},
        )
        metadata = self.prompt_manager.get_prompt_metadata("issue_matching")
        response = await self.llm_client.complete(
            prompt,
            max_tokens=metadata["max_tokens"],
            temperature=metadata["temperature"],
        )

        try:
            return parse_match_response(response, candidates)
        except MatchAmbiguity as exc:
            logger.warning(
                "Ambiguous match for '%s', treating as new: %s (response=%s)",
                name,
                exc,
                preview_text(response),
            )
            return MatchDecision.new()


def build_issue_matcher(config: Dict[str, Any], llm_client: Optional[LLMClient] = None) -> IssueMatcher:
    if config.get("matcher") == "lexical":
        return LexicalIssueMatcher(float(config.get("lexical_threshold", DEFAULT_LEXICAL_THRESHOLD)))
    if llm_client is None:
        raise ValueError("Semantic issue matching requires an LLM client")
    return SemanticIssueMatcher(llm_client)
