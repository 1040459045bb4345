"""JWT utilities for authentication."""

from datetime import datetime, timedelta, timezone

import jwt
from pydantic import BaseModel

from app.config import get_settings

ADMIN_SUBJECT = "admin"


class TokenPayload(BaseModel):
    """JWT token payload."""

    sub: str  # Subject - user id
    exp: datetime  # Expiration time
    iat: datetime  # Issued at
    type: str = "access"  # Token type


def _encode(subject: str, token_type: str) -> str:
    settings = get_settings()

    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=settings.jwt_access_token_expire_minutes)

    payload = {
        "sub": subject,
        "exp": expires,
        "iat": now,
        "type": token_type,
    }

    return jwt.encode(
        payload,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def create_access_token(user_id: str) -> str:
    """Create a JWT access token for a user."""
    return _encode(user_id, "access")


def create_admin_access_token() -> str:
    """Create a JWT access token that unlocks cross-user queries."""
    return _encode(ADMIN_SUBJECT, "admin_access")


def decode_access_token(token: str) -> TokenPayload | None:
    """Decode and validate a JWT access token.

    Returns TokenPayload if valid, None if invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return TokenPayload(
            sub=payload["sub"],
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            type=payload.get("type", "access"),
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def is_admin_token(payload: TokenPayload) -> bool:
    """Check if a token payload is an admin token."""
    return payload.type == "admin_access" and payload.sub == ADMIN_SUBJECT
