"""
Bearer-token authentication.

Tokens are issued by the hosted auth provider and signed with a shared
secret; the ``sub`` claim is the user id every per-user row is keyed on.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt

from nexo_backend import config
from nexo_backend.services.errors import AuthFailure

logger = logging.getLogger(__name__)


def decode_access_token(token: str) -> dict:
    """
    Decode and validate a JWT.

    Raises:
        AuthFailure: secret not configured, token invalid or expired
    """
    if not config.AUTH_JWT_SECRET:
        raise AuthFailure("AUTH_JWT_SECRET is not configured")

    options = {"verify_aud": bool(config.AUTH_JWT_AUDIENCE)}
    try:
        return jwt.decode(
            token,
            config.AUTH_JWT_SECRET,
            algorithms=[config.AUTH_JWT_ALGORITHM],
            audience=config.AUTH_JWT_AUDIENCE,
            options=options,
        )
    except JWTError as exc:
        raise AuthFailure(f"Invalid token: {exc}") from exc


def bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        return None
    return parts[1].strip()


def user_id_from_header(auth_header: Optional[str]) -> str:
    token = bearer_token(auth_header)
    if token is None:
        raise AuthFailure("Missing bearer token")

    payload = decode_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise AuthFailure("Token has no subject")
    return str(user_id)


async def get_current_user_id(request: Request) -> str:
    """
    FastAPI dependency returning the caller's user id.

    Raises:
        HTTPException 401 if not authenticated
    """
    try:
        return user_id_from_header(request.headers.get("authorization"))
    except AuthFailure as exc:
        logger.warning("[AUTH] Rejected request to %s: %s", request.url.path, exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
