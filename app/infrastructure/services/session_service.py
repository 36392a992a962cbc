"""
Session Service

Login sessions behind the JWT access tokens.

A session is valid iff it is active and not expired. Each session holds
two opaque tokens, stored only as SHA-256 digests:
- the session token, embedded in access tokens as ``sid``
- the refresh token, exchanged (and rotated) for a new token pair
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings, get_settings
from app.domain.users import TokenResponse, UserStatus
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.base import as_utc, utc_now
from app.infrastructure.db.models.user import UserSession
from app.infrastructure.db.repositories.user_repository import SessionRepository, UserRepository
from app.infrastructure.exceptions import AuthenticationError
from app.infrastructure.security import create_access_token, generate_token, hash_token


logger = logging.getLogger(__name__)


@dataclass
class IssuedSession:
    """A session row plus the raw tokens, which are never stored."""
    session: UserSession
    access_token: str
    refresh_token: str
    expires_in: int

    def to_response(self) -> TokenResponse:
        return TokenResponse(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_in=self.expires_in,
            session_expires_at=as_utc(self.session.expires_at),
        )


class SessionService:
    """
    Session lifecycle: create, validate, refresh, logout, revoke, sweep.

    Args:
        db: Persistence handle
        settings: Token lifetimes, JWT secret and the concurrent-session cap
    """

    def __init__(self, db: Database, settings: Optional[Settings] = None):
        self._db = db
        self._settings = settings or get_settings()

    async def create_session(
        self,
        user_id: UUID,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IssuedSession:
        """
        Open a session for a freshly authenticated user.

        At most ``max_active_sessions`` stay active; the oldest are
        deactivated to make room.
        """
        now = now or utc_now()
        session_token = generate_token()
        refresh_token = generate_token()

        async with self._db.session() as session:
            repo = SessionRepository(session)
            await self._enforce_session_cap(repo, user_id, now)

            user_session = await repo.add(UserSession(
                user_id=user_id,
                session_token_hash=hash_token(session_token),
                refresh_token_hash=hash_token(refresh_token),
                expires_at=now + timedelta(days=self._settings.refresh_token_expire_days),
                last_activity_at=now,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
            ))

        logger.info(f"Opened session {user_session.id} for user {user_id}")
        return self._issue(user_session, session_token, refresh_token, now)

    async def _enforce_session_cap(self, repo: SessionRepository, user_id: UUID, now: datetime) -> None:
        active = await repo.list_active_for_user(user_id, now)
        excess = len(active) - self._settings.max_active_sessions + 1
        for old in active[:max(excess, 0)]:
            await repo.update_fields(old, is_active=False)
            logger.info(f"Session cap reached for user {user_id}, closed session {old.id}")

    async def validate_session(self, session_token: str, now: Optional[datetime] = None) -> UserSession:
        """
        Resolve the session behind an access token and record activity.

        Raises:
            AuthenticationError: unknown, inactive or expired session, or the
                account is no longer active
        """
        now = now or utc_now()
        failure: Optional[str] = None

        async with self._db.session() as session:
            repo = SessionRepository(session)
            user_session = await repo.get_by_token_hash(hash_token(session_token))

            if user_session is None or not user_session.is_valid(now):
                failure = "Session is invalid or expired"
            else:
                user = await UserRepository(session).get_by_id(user_session.user_id)
                if user is None or user.status != UserStatus.ACTIVE.value:
                    await repo.update_fields(user_session, is_active=False)
                    failure = "Account is no longer active"
                else:
                    await repo.update_fields(user_session, last_activity_at=now)

        if failure:
            raise AuthenticationError(failure)
        return user_session

    async def refresh(self, refresh_token: str, now: Optional[datetime] = None) -> IssuedSession:
        """
        Exchange a refresh token for a new token pair.

        Both opaque tokens are rotated, so the old refresh token and access
        tokens minted from the old session token stop working.
        """
        now = now or utc_now()

        async def operation(session: AsyncSession) -> IssuedSession:
            repo = SessionRepository(session)
            user_session = await repo.get_by_refresh_hash(hash_token(refresh_token))
            if user_session is None or not user_session.is_valid(now):
                raise AuthenticationError("Refresh token is invalid or expired")

            user = await UserRepository(session).get_by_id(user_session.user_id)
            if user is None or user.status != UserStatus.ACTIVE.value:
                raise AuthenticationError("Account is no longer active")

            new_session_token = generate_token()
            new_refresh_token = generate_token()
            await repo.update_fields(
                user_session,
                session_token_hash=hash_token(new_session_token),
                refresh_token_hash=hash_token(new_refresh_token),
                expires_at=now + timedelta(days=self._settings.refresh_token_expire_days),
                last_activity_at=now,
            )
            return self._issue(user_session, new_session_token, new_refresh_token, now)

        issued = await self._db.run_with_retry(operation, label="session refresh")
        logger.info(f"Refreshed session {issued.session.id}")
        return issued

    async def logout(self, session_token: str) -> bool:
        """Deactivate one session. False if it was not active."""
        async with self._db.session() as session:
            repo = SessionRepository(session)
            user_session = await repo.get_by_token_hash(hash_token(session_token))
            if user_session is None or not user_session.is_active:
                return False
            await repo.update_fields(user_session, is_active=False)

        logger.info(f"Closed session {user_session.id}")
        return True

    async def revoke_all(self, user_id: UUID) -> int:
        async with self._db.session() as session:
            revoked = await SessionRepository(session).deactivate_all_for_user(user_id)
        logger.info(f"Revoked {revoked} sessions for user {user_id}")
        return revoked

    async def list_active(self, user_id: UUID, now: Optional[datetime] = None) -> List[UserSession]:
        async with self._db.session() as session:
            return await SessionRepository(session).list_active_for_user(user_id, now or utc_now())

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Deactivate every expired session."""
        async with self._db.session() as session:
            closed = await SessionRepository(session).deactivate_expired(now or utc_now())
        if closed:
            logger.info(f"Session sweep closed {closed} expired sessions")
        return closed

    def _issue(
        self,
        user_session: UserSession,
        session_token: str,
        refresh_token: str,
        now: datetime,
    ) -> IssuedSession:
        access_token = create_access_token(user_session.user_id, session_token, self._settings, now)
        return IssuedSession(
            session=user_session,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._settings.access_token_expire_minutes * 60,
        )
