import os
from typing import Any, Dict

DEFAULT_ONLINE_CHAT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_LOCAL_BASE_URL = "http://localhost:1234"

MATCHER_STRATEGIES = {"semantic", "lexical"}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    return value_str in {"1", "true", "yes", "on"}


def _normalize_mode(value: Any, fallback: str = "online") -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in {"local", "online"} else fallback


def _normalize_matcher(value: Any, fallback: str = "semantic") -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in MATCHER_STRATEGIES else fallback


def get_env_llm_defaults() -> Dict[str, Any]:
    return {
        "mode": _normalize_mode(os.getenv("NEXO_LLM_MODE", "online")),
        "chat_model": os.getenv("NEXO_CHAT_MODEL", DEFAULT_ONLINE_CHAT_MODEL),
        "base_url": os.getenv("LOCAL_LLM_BASE_URL", DEFAULT_LOCAL_BASE_URL),
        "local_chat_model": os.getenv("LOCAL_LLM_CHAT_MODEL", "glm-4.6v-flash"),
        "timeout_seconds": float(os.getenv("LOCAL_LLM_TIMEOUT_SECONDS", "120")),
        "max_retries": int(os.getenv("NEXO_LLM_MAX_RETRIES", "3")),
        "matcher": _normalize_matcher(os.getenv("NEXO_ISSUE_MATCHER", "semantic")),
        "lexical_threshold": float(os.getenv("NEXO_LEXICAL_MATCH_THRESHOLD", "0.8")),
        "reflection_enabled": _to_bool(os.getenv("NEXO_REFLECTION_ENABLED", "true")),
        "aggregate_max_retries": int(os.getenv("NEXO_AGGREGATE_MAX_RETRIES", "5")),
    }
