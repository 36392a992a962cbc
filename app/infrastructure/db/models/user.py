"""
User & Session Database Models

SQLModel tables for account identity and login sessions.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime
from sqlmodel import Field

from app.domain.users import UserRole, UserStatus
from app.infrastructure.db.models.base import BaseModel, as_utc, utc_now


class User(BaseModel, table=True):
    """
    Account table. Maps to 'users'.

    Rows are never physically deleted: ``deleted_at`` tombstones the account
    so ledger rows that reference it stay valid. Repositories filter
    tombstoned rows out.
    """

    __tablename__ = "users"

    email: str = Field(max_length=255, unique=True, index=True, nullable=False)
    username: Optional[str] = Field(default=None, max_length=50, unique=True, index=True)
    password_hash: str = Field(max_length=255, nullable=False)

    role: str = Field(default=UserRole.USER.value, max_length=20)
    status: str = Field(default=UserStatus.ACTIVE.value, max_length=20, index=True)
    email_verified: bool = Field(default=False)

    # Lock-out bookkeeping
    login_attempts: int = Field(default=0)
    locked_until: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    last_login_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)

    deleted_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True), index=True)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """Locked while ``locked_until`` is in the future."""
        locked_until = as_utc(self.locked_until)
        return locked_until is not None and (now or utc_now()) < locked_until


class UserSession(BaseModel, table=True):
    """
    Login session table. Maps to 'user_sessions'.

    Only SHA-256 digests of the session and refresh tokens are stored.
    """

    __tablename__ = "user_sessions"

    user_id: UUID = Field(foreign_key="users.id", index=True, nullable=False)
    session_token_hash: str = Field(max_length=64, unique=True, index=True, nullable=False)
    refresh_token_hash: Optional[str] = Field(default=None, max_length=64, unique=True, index=True)

    expires_at: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    last_activity_at: datetime = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
    is_active: bool = Field(default=True, index=True)

    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=500)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """A session is valid iff it is active and not yet expired."""
        return self.is_active and (now or utc_now()) < as_utc(self.expires_at)
