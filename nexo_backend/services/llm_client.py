"""Text-completion gateway shared by extraction, matching and reflection.

Online mode talks to Anthropic; local mode talks to an OpenAI-compatible
``/v1/chat/completions`` endpoint (LM Studio, llama.cpp server, ...).
"""
import asyncio
import logging
import os
import random
from typing import Any, Dict, Optional

import anthropic
import httpx

from nexo_backend.config import ANTHROPIC_API_KEY
from nexo_backend.services.llm_config import get_env_llm_defaults

logger = logging.getLogger(__name__)

TRACE_API_CALLS = os.getenv("TRACE_API_CALLS", "true").strip().lower() in {"1", "true", "yes", "on"}
API_LOG_PREVIEW_CHARS = int(os.getenv("API_LOG_PREVIEW_CHARS", "280"))


class LLMError(Exception):
    """The model could not be reached or refused the request."""


def preview_text(value: Any, limit: int = API_LOG_PREVIEW_CHARS) -> str:
    text = str(value or "")
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...<truncated {len(text) - limit} chars>"


class LLMClient:
    def __init__(self, config: Optional[Dict[str, Any]] = None, backoff_base: float = 1.5) -> None:
        self.config = config or get_env_llm_defaults()
        self.mode = self.config.get("mode", "online")
        self.max_retries = max(1, int(self.config.get("max_retries", 3)))
        self.backoff_base = backoff_base
        self._anthropic: Optional[anthropic.AsyncAnthropic] = None

    def _anthropic_client(self) -> anthropic.AsyncAnthropic:
        if self._anthropic is None:
            if not ANTHROPIC_API_KEY:
                raise LLMError("ANTHROPIC_API_KEY not found in environment")
            self._anthropic = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)
        return self._anthropic

    async def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
    ) -> str:
        """Send one user turn and return the model's text reply."""
        if self.mode == "local":
            return await self._complete_local(prompt, system, max_tokens, temperature)
        return await self._complete_online(prompt, system, max_tokens, temperature)

    async def _complete_online(
        self,
        prompt: str,
        system: Optional[str],
        max_tokens: int,
        temperature: float,
    ) -> str:
        client = self._anthropic_client()
        model = self.config.get("chat_model")
        kwargs: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                if TRACE_API_CALLS:
                    logger.info("[LLM API] anthropic model=%s attempt=%s", model, attempt + 1)
                message = await client.messages.create(**kwargs)
                text = "".join(
                    block.text for block in message.content if getattr(block, "type", None) == "text"
                )
                if TRACE_API_CALLS:
                    logger.info("[LLM API] anthropic preview=%s", preview_text(text))
                return text

            except anthropic.AuthenticationError as exc:
                raise LLMError("Authentication failed. Check your API key.") from exc

            except (anthropic.RateLimitError, anthropic.APIConnectionError) as exc:
                logger.warning("[LLM API] retryable error: %s", exc)
                last_error = exc

            except anthropic.APIError as exc:
                if "overloaded" not in str(exc).lower():
                    raise LLMError(f"API error occurred: {exc}") from exc
                logger.warning("[LLM API] model overloaded, retrying")
                last_error = exc

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_base ** attempt + random.uniform(0, 1))

        raise LLMError(f"Model call failed after {self.max_retries} attempts") from last_error

    async def _complete_local(
        self,
        prompt: str,
        system: Optional[str],
        max_tokens: int,
        temperature: float,
    ) -> str:
        base_url = str(self.config.get("base_url", "")).rstrip("/")
        url = f"{base_url}/v1/chat/completions"
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.config.get("local_chat_model"),
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        timeout = float(self.config.get("timeout_seconds", 120))
        if TRACE_API_CALLS:
            logger.info("[LLM API] POST %s model=%s", url, payload["model"])
        async with httpx.AsyncClient(timeout=timeout) as client:
            try:
                response = await client.post(url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise LLMError(f"Local LLM request failed: {exc}") from exc

        if TRACE_API_CALLS:
            logger.info("[LLM API] %s status=%s preview=%s", url, response.status_code, preview_text(response.text))
        body = response.json()
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError("Local LLM response missing choices") from exc


_CLIENT_CACHE: Dict[str, LLMClient] = {}


def get_llm_client(config: Optional[Dict[str, Any]] = None) -> LLMClient:
    resolved = config or get_env_llm_defaults()
    key = f"{resolved.get('mode')}:{resolved.get('chat_model')}:{resolved.get('base_url')}"
    if key not in _CLIENT_CACHE:
        _CLIENT_CACHE[key] = LLMClient(resolved)
    return _CLIENT_CACHE[key]
