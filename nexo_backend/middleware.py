"""
Request hygiene middleware: body size limits and tiered rate limiting.

Authentication is per-route (see ``auth.py``); these layers only protect the
process from oversized payloads and refresh storms.
"""

import logging
import os
import time
from collections import defaultdict
from typing import Callable, Set, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger("nexo_backend")

HEALTH_PATHS: Set[str] = {"/health"}

MAX_JSON_BYTES: int = int(os.getenv("MAX_JSON_BYTES", str(256 * 1024)))  # 256 KB default
MAX_BODY_BYTES: int = int(os.getenv("MAX_BODY_BYTES", str(1 * 1024 * 1024)))

RATE_LIMIT_WINDOW: int = 60  # seconds

RATE_LIMIT_EXPENSIVE: int = int(os.getenv("RATE_LIMIT_EXPENSIVE", "10"))
RATE_LIMIT_MUTATE: int = int(os.getenv("RATE_LIMIT_MUTATE", "60"))
RATE_LIMIT_READ: int = int(os.getenv("RATE_LIMIT_READ", "200"))

# Endpoints that call the model
EXPENSIVE_PATHS: Tuple[str, ...] = (
    "/api/refresh",
)


def _normalize_path(path: str) -> str:
    """Strip trailing slash for consistent matching."""
    return path.rstrip("/") if path != "/" else path


def _is_health(path: str) -> bool:
    return _normalize_path(path) in HEALTH_PATHS


def _is_expensive(path: str) -> bool:
    return _normalize_path(path) in EXPENSIVE_PATHS


def _is_mutating(method: str) -> bool:
    return method in {"POST", "PUT", "DELETE", "PATCH"}


def _is_cors_preflight(request: Request) -> bool:
    return request.method == "OPTIONS" and "access-control-request-method" in request.headers


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Reject requests with bodies exceeding configured limits.

    JSON content types are limited to MAX_JSON_BYTES, everything else to
    MAX_BODY_BYTES.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        content_length = request.headers.get("content-length")
        content_type = request.headers.get("content-type", "")

        if content_length is not None:
            try:
                length = int(content_length)
            except ValueError:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={"detail": "Invalid Content-Length header."},
                )

            limit = MAX_JSON_BYTES if "application/json" in content_type else MAX_BODY_BYTES
            if length > limit:
                logger.warning(
                    "[SECURITY] Rejected oversized request to %s (%d bytes, limit %d)",
                    request.url.path,
                    length,
                    limit,
                )
                return JSONResponse(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    content={"detail": f"Request body too large. Limit: {limit} bytes."},
                )

        return await call_next(request)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory per-IP rate limiting with tiered limits.

    Tiers:
    - Expensive (refresh): RATE_LIMIT_EXPENSIVE/min
    - Mutating (POST/PUT/DELETE/PATCH): RATE_LIMIT_MUTATE/min
    - Read (GET): RATE_LIMIT_READ/min
    - Health: unlimited
    """

    def __init__(self, app: ASGIApp, **kwargs):
        super().__init__(app, **kwargs)
        # {ip: [(timestamp, tier)]}
        self._requests: dict = defaultdict(list)

    def _clean_old_entries(self, ip: str, now: float):
        cutoff = now - RATE_LIMIT_WINDOW
        self._requests[ip] = [
            (ts, tier) for ts, tier in self._requests[ip] if ts > cutoff
        ]

    def _count_tier(self, ip: str, tier: str) -> int:
        return sum(1 for _, t in self._requests[ip] if t == tier)

    async def dispatch(self, request: Request, call_next: Callable):
        path = _normalize_path(request.url.path)
        method = request.method

        if _is_health(path) or _is_cors_preflight(request):
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        now = time.time()
        self._clean_old_entries(ip, now)

        if _is_expensive(path):
            tier = "expensive"
            limit = RATE_LIMIT_EXPENSIVE
        elif _is_mutating(method):
            tier = "mutate"
            limit = RATE_LIMIT_MUTATE
        else:
            tier = "read"
            limit = RATE_LIMIT_READ

        count = self._count_tier(ip, tier)
        if count >= limit:
            logger.warning(
                "[RATE LIMIT] %s exceeded %s tier limit (%d/%d) on %s %s",
                ip, tier, count, limit, method, path,
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": f"Rate limit exceeded ({tier} tier: {limit} requests per {RATE_LIMIT_WINDOW}s)."
                },
                headers={"Retry-After": str(RATE_LIMIT_WINDOW)},
            )

        self._requests[ip].append((now, tier))
        return await call_next(request)


def configure_request_limits(app):
    """
    Wire body and rate limits onto the FastAPI app.

    Middleware executes in reverse registration order (last added = outermost).
    """
    app.add_middleware(BodySizeLimitMiddleware)
    app.add_middleware(RateLimitMiddleware)

    logger.info("[SECURITY] Rate limits: expensive=%d, mutate=%d, read=%d per %ds",
                RATE_LIMIT_EXPENSIVE, RATE_LIMIT_MUTATE, RATE_LIMIT_READ, RATE_LIMIT_WINDOW)
    logger.info("[SECURITY] Body limits: JSON=%d bytes, other=%d bytes", MAX_JSON_BYTES, MAX_BODY_BYTES)
