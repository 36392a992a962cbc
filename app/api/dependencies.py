"""
API Dependencies

FastAPI dependency injection for authentication.

Security: access tokens are HS256 JWTs verified with the configured
secret, and the session they name (``sid``) must still be valid. A
revoked or expired session invalidates every token minted for it.
"""

import logging
import secrets
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.infrastructure.db.dependencies import SessionServiceDep, SettingsDep
from app.infrastructure.db.models.user import UserSession
from app.infrastructure.exceptions import AuthenticationError
from app.infrastructure.security import decode_access_token


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_session(
    sessions: SessionServiceDep,
    settings: SettingsDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UserSession:
    """
    Verify the bearer token and resolve its live session.

    Raises:
        HTTPException 401: token missing, expired, invalid, or its session is gone
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = decode_access_token(credentials.credentials, settings)
        user_session = await sessions.validate_session(claims.session_token)
    except AuthenticationError as e:
        logger.info(f"Rejected bearer token: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    if user_session.user_id != claims.user_id:
        logger.warning(f"Token subject does not match session {user_session.id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )

    return user_session


async def get_current_user_id(
    user_session: UserSession = Depends(get_current_session),
) -> UUID:
    """Authenticated user ID."""
    return user_session.user_id


async def get_session_token(
    settings: SettingsDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Opaque session token of the bearer, for logout."""
    if not credentials:
        return None
    try:
        return decode_access_token(credentials.credentials, settings).session_token
    except AuthenticationError:
        return None


async def verify_admin_api_key(
    settings: SettingsDep,
    x_admin_key: Optional[str] = Header(default=None, description="Admin API key for operator endpoints"),
) -> bool:
    """
    Verify admin API key from header.

    The admin key is configured through ADMIN_API_KEY.
    """
    expected_key = settings.admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # compare_digest keeps the comparison constant-time
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
CurrentSession = Annotated[UserSession, Depends(get_current_session)]
