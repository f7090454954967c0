"""Validation of the analysis model's structured output.

The model is asked for one JSON object with ``issues`` and ``connections``.
Replies are often wrapped in prose or markdown, so the first top-level
``{...}`` block is located by brace matching before it is parsed.
"""

import json
import logging
import re
from typing import Any, List, Optional

from pydantic import BaseModel, ValidationError, field_validator

from nexo_backend.services.errors import ParseFailure

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ("low", "medium", "high")
CONNECTION_TYPES = ("co_occurrence", "causal")
DEFAULT_CONNECTION_TYPE = "co_occurrence"
MAX_QUOTES = 3

_THINK_BLOCK = re.compile(r"<think>.*?</think>", flags=re.IGNORECASE | re.DOTALL)


class ExtractedIssue(BaseModel):
    name: str
    stance: str = ""
    # Not clamped here; aggregation clamps when folding.
    intensity: float = 0.5
    confidence: str = ""
    quotes: List[str] = []

    @field_validator("name", mode="before")
    @classmethod
    def _name_not_blank(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("issue name must be a non-empty string")
        return value.strip()

    @field_validator("stance", "confidence", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("intensity", mode="before")
    @classmethod
    def _default_intensity(cls, value: Any) -> Any:
        return 0.5 if value is None else value

    @field_validator("confidence")
    @classmethod
    def _normalize_confidence(cls, value: str) -> str:
        normalized = value.strip().lower()
        return normalized if normalized in CONFIDENCE_LEVELS else value

    @field_validator("quotes", mode="before")
    @classmethod
    def _coerce_quotes(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("quotes must be a list of strings")
        return [str(quote) for quote in value if quote][:MAX_QUOTES]


class ExtractedConnection(BaseModel):
    issue_a: str = ""
    issue_b: str = ""
    type: str = DEFAULT_CONNECTION_TYPE
    evidence: str = ""

    @field_validator("issue_a", "issue_b", "evidence", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("issue_a", "issue_b")
    @classmethod
    def _strip_names(cls, value: str) -> str:
        return value.strip()

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in CONNECTION_TYPES else DEFAULT_CONNECTION_TYPE


class ExtractionResult(BaseModel):
    issues: List[ExtractedIssue] = []
    connections: List[ExtractedConnection] = []

    @field_validator("issues", "connections", mode="before")
    @classmethod
    def _missing_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


def find_first_json_object(text: Optional[str]) -> Optional[str]:
    """Return the first balanced top-level ``{...}`` block in *text*.

    Braces inside JSON string literals are ignored. Returns ``None`` when no
    balanced block exists.
    """
    if not text:
        return None

    depth = 0
    start = -1
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if depth == 0:
            if char == "{":
                depth = 1
                start = index
                in_string = False
                escaped = False
            continue

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]

    return None


def parse_extraction_response(response_text: Optional[str]) -> ExtractionResult:
    """Validate one analysis reply.

    Raises:
        ParseFailure: no JSON object found, invalid JSON, or schema mismatch.
    """
    normalized = _THINK_BLOCK.sub("", response_text or "")
    block = find_first_json_object(normalized)
    if block is None:
        raise ParseFailure("No JSON object found in analysis response", response_text or "")

    try:
        payload = json.loads(block)
    except json.JSONDecodeError as exc:
        raise ParseFailure(f"Analysis response is not valid JSON: {exc}", response_text or "") from exc

    try:
        return ExtractionResult.model_validate(payload)
    except ValidationError as exc:
        raise ParseFailure(
            f"Analysis response failed validation ({exc.error_count()} errors)",
            response_text or "",
        ) from exc
