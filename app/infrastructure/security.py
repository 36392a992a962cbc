"""
Security Primitives

Password hashing (bcrypt), opaque token generation and JWT access
tokens. Access tokens are HS256 JWTs carrying the user id (``sub``) and
the opaque session token (``sid``); a token is only honoured while its
session is still valid.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import bcrypt
import jwt

from app.config.settings import Settings
from app.infrastructure.db.models.base import utc_now
from app.infrastructure.exceptions import AuthenticationError


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def generate_token(nbytes: int = 32) -> str:
    """URL-safe random token for sessions and refresh."""
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """SHA-256 hex digest; only digests of tokens are persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class AccessTokenClaims:
    user_id: UUID
    session_token: str
    expires_at: datetime


def create_access_token(
    user_id: UUID,
    session_token: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> str:
    now = now or utc_now()
    payload = {
        "sub": str(user_id),
        "sid": session_token,
        "iss": settings.jwt_issuer,
        "iat": now,
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> AccessTokenClaims:
    """
    Verify signature, issuer and expiry of an access token.

    Raises:
        AuthenticationError: expired, tampered or malformed token
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "sub", "sid", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError("Invalid token", {"reason": str(e)})

    try:
        return AccessTokenClaims(
            user_id=UUID(payload["sub"]),
            session_token=payload["sid"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except ValueError:
        raise AuthenticationError("Invalid token subject")
