"""
User & Session Repositories

Data access for accounts and login sessions. Tombstoned users are
invisible to every lookup here.
"""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.user import User, UserSession
from app.infrastructure.db.repositories.base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    """Repository for user accounts."""

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)

    async def get_by_id(self, id: UUID, *, for_update: bool = False) -> Optional[User]:
        """Get a live (not tombstoned) user by ID."""
        stmt = select(User).where(User.id == id, User.deleted_at.is_(None))
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        """Emails are matched case-insensitively (stored lowercased)."""
        stmt = select(User).where(
            User.email == email.strip().lower(),
            User.deleted_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_username(self, username: str) -> Optional[User]:
        stmt = select(User).where(User.username == username, User.deleted_at.is_(None))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def email_taken(self, email: str) -> bool:
        """
        True if any account, tombstoned or not, holds the email.

        The unique index covers tombstoned rows too.
        """
        stmt = select(User.id).where(User.email == email.strip().lower())
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def count_by_status(self) -> Dict[str, int]:
        """Live account counts grouped by status."""
        stmt = (
            select(User.status, func.count(User.id).label("total"))
            .where(User.deleted_at.is_(None))
            .group_by(User.status)
        )
        result = await self._session.execute(stmt)
        return {row.status: row.total for row in result.all()}

    async def count_created_since(self, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(User)
            .where(User.created_at >= since, User.deleted_at.is_(None))
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()


class SessionRepository(BaseRepository[UserSession]):
    """Repository for login sessions."""

    def __init__(self, session: AsyncSession):
        super().__init__(UserSession, session)

    async def get_by_token_hash(self, token_hash: str) -> Optional[UserSession]:
        stmt = select(UserSession).where(UserSession.session_token_hash == token_hash)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_refresh_hash(self, refresh_hash: str) -> Optional[UserSession]:
        stmt = select(UserSession).where(UserSession.refresh_token_hash == refresh_hash)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_for_user(self, user_id: UUID, now: datetime) -> List[UserSession]:
        """Valid sessions, oldest first."""
        stmt = (
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_active.is_(True),
                UserSession.expires_at > now,
            )
            .order_by(UserSession.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_all_for_user(self, user_id: UUID, *, keep_session_id: Optional[UUID] = None) -> int:
        stmt = update(UserSession).where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
        if keep_session_id is not None:
            stmt = stmt.where(UserSession.id != keep_session_id)
        stmt = stmt.values(is_active=False).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def deactivate_expired(self, now: datetime) -> int:
        """Expiry sweep: flip every expired-but-active session off."""
        stmt = (
            update(UserSession)
            .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0
