"""API dependencies for authentication."""

from __future__ import annotations

from fastapi import Cookie, Header

from app.core.config import settings
from app.core.exceptions import AuthenticationError, ConfigurationError
from app.core.security import TokenData, decode_access_token, verify_shared_secret


__all__ = [
    "require_scheduler",
    "require_user",
]


def _extract_token(
    authorization: str | None = Header(default=None),
    session: str | None = Cookie(default=None),
) -> str | None:
    """Extract JWT token from Authorization header or session cookie."""
    # Prefer Authorization header (for API clients)
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            return token

    # Fall back to session cookie (for browser clients)
    if session:
        return session

    return None


async def require_user(
    authorization: str | None = Header(default=None),
    session: str | None = Cookie(default=None),
) -> TokenData:
    """
    Require an authenticated user.

    Tokens are issued by the surrounding web tier; only the signature,
    issuer, audience and expiry are checked here.
    """
    token = _extract_token(authorization, session)
    if not token:
        raise AuthenticationError(
            message="Authentication required",
            error_code="MISSING_CREDENTIALS",
        )
    return decode_access_token(token)


async def require_scheduler(
    authorization: str | None = Header(default=None),
) -> None:
    """Require the shared scheduler secret as a bearer token."""
    if not settings.scheduler_secret:
        raise ConfigurationError(
            message="Scheduler secret is not configured",
            error_code="MISSING_SCHEDULER_SECRET",
        )
    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = value
    if not verify_shared_secret(token, settings.scheduler_secret):
        raise AuthenticationError(
            message="Invalid scheduler credentials",
            error_code="INVALID_SCHEDULER_SECRET",
        )
