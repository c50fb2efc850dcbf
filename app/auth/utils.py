"""
Authentication Utilities
JWT handling for company-scoped caller identity.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from app.config import settings


def create_access_token(subject: str, extra_data: dict[str, Any] | None = None) -> str:
    """
    Create a JWT access token.

    Tokens are normally minted by the main application; this is used by
    tooling and tests.

    Args:
        subject: Token subject (company ID)
        extra_data: Additional data to include in token payload

    Returns:
        Encoded JWT token string
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        "type": "access",
        "iat": now,
        "jti": secrets.token_urlsafe(32),
    }

    if extra_data:
        payload.update(extra_data)

    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Token payload dict if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return None
