"""Bearer token check for protected endpoints.

Identity management lives upstream. The gateway only verifies that a
bearer token is an HS256 JWT signed with JWT_SECRET, is unexpired, and
names this API as its audience.

Usage:
    @router.get("/export", dependencies=[Depends(require_bearer)])
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import jwt
import structlog
from fastapi import HTTPException, Request, status
from jwt.exceptions import DecodeError, InvalidTokenError

from docgateway.config import Settings

log = structlog.get_logger(__name__)


class TokenValidationError(Exception):
    """Raised when a bearer token cannot be validated."""


def validate_token(token: str, settings: Settings) -> dict[str, Any]:
    """Decode and verify a bearer token, returning its claims."""
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            options={"verify_exp": True, "verify_aud": True, "require": ["sub", "exp"]},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Token validation failed: {exc}") from exc
    return claims


async def require_bearer(request: Request) -> dict[str, Any]:
    """FastAPI dependency: validated claims, or HTTP 401."""
    settings: Settings = request.app.state.settings
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        claims = validate_token(token, settings)
    except TokenValidationError as exc:
        log.warning("auth.token_rejected", path=request.url.path, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return claims


def create_token(
    *,
    sub: str,
    secret: str,
    audience: str = "docgateway-api",
    expires_in: int = 3600,
) -> str:
    """Create an HS256 token for tests and local tooling.

    Never call this in production code.
    """
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": sub,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")
