"""JWT verification for tokens issued by the surrounding application."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from .config import settings
from .exceptions import AuthenticationError


JWT_ALGORITHM = "HS256"
JWT_ISSUER = "tradejournal"
JWT_AUDIENCE = "tradejournal-api"
ACCESS_TOKEN_EXPIRE_MINUTES = 60


class TokenData(BaseModel):
    """Decoded JWT token data."""

    sub: str  # user id
    exp: datetime
    iat: datetime
    iss: str
    aud: str
    jti: str


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a signed token (used by the web tier and by tests)."""
    now = datetime.now(timezone.utc)
    expires = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        "sub": user_id,
        "exp": expires,
        "iat": now,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(payload, settings.auth_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> TokenData:
    """Decode and validate a JWT access token."""
    try:
        payload = jwt.decode(
            token,
            settings.auth_secret,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            audience=JWT_AUDIENCE,
            options={"require": ["exp", "iat", "sub", "iss", "aud", "jti"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError(message="Token has expired", error_code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise AuthenticationError(message="Invalid token", error_code="INVALID_TOKEN")

    return TokenData(
        sub=str(payload["sub"]),
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        iss=payload["iss"],
        aud=payload["aud"],
        jti=payload["jti"],
    )


def verify_shared_secret(provided: str | None, expected: str) -> bool:
    """Constant-time comparison for shared bearer secrets."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())
