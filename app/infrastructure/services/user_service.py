"""
User Service

Account registration, password authentication with lock-out, password
changes, operator status changes and soft deletion. Sessions and tokens
live in ``SessionService``.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings, get_settings
from app.domain.credits import TransactionType
from app.domain.users import UserStatsResponse, UserStatus
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.base import utc_now
from app.infrastructure.db.models.user import User
from app.infrastructure.db.repositories.credit_repository import CreditRepository
from app.infrastructure.db.repositories.user_repository import SessionRepository, UserRepository
from app.infrastructure.exceptions import (
    AuthenticationError,
    DuplicateOperationError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.security import hash_password, verify_password
from app.infrastructure.services.credit_ledger_service import CreditLedgerService


logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


class UserService:
    """
    Service for user accounts.

    Args:
        db: Persistence handle
        ledger: Credit ledger, used for the signup bonus
        settings: Lock-out policy, bcrypt cost and signup bonus
    """

    def __init__(
        self,
        db: Database,
        ledger: CreditLedgerService,
        settings: Optional[Settings] = None,
    ):
        self._db = db
        self._ledger = ledger
        self._settings = settings or get_settings()

    async def register(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
    ) -> User:
        """
        Create an account with an empty credit balance.

        Raises:
            DuplicateOperationError: email or username already registered
        """
        email = email.strip().lower()
        password_hash = hash_password(password, rounds=self._settings.bcrypt_rounds)
        bonus = self._settings.signup_bonus_credits

        async def operation(session: AsyncSession) -> User:
            repo = UserRepository(session)
            if await repo.email_taken(email):
                raise DuplicateOperationError("Email already registered", key=email)
            if username and await repo.get_by_username(username):
                raise DuplicateOperationError("Username already taken", key=username)

            user = await repo.add(User(email=email, username=username, password_hash=password_hash))
            await CreditRepository(session).create_balance(user.id)

            if bonus > 0:
                await self._ledger.apply(
                    session,
                    user.id,
                    TransactionType.BONUS,
                    bonus,
                    description="Signup bonus",
                    reference_type="user",
                    reference_id=str(user.id),
                    idempotency_key=f"signup:{user.id}",
                )
            return user

        user = await self._db.run_with_retry(operation, label="registration")
        logger.info(f"Registered user {user.id}")
        return user

    async def authenticate(
        self,
        email: str,
        password: str,
        now: Optional[datetime] = None,
    ) -> User:
        """
        Check email and password.

        Each failure counts against the account; reaching
        ``max_login_attempts`` locks it for ``lockout_minutes``.

        Raises:
            AuthenticationError: bad credentials, locked or inactive account
        """
        now = now or utc_now()
        failure: Optional[str] = None

        # Failed-attempt counters must be committed, so the error is raised
        # only after the unit of work has closed.
        async with self._db.session() as session:
            repo = UserRepository(session)
            user = await repo.get_by_email(email)

            if user is None:
                failure = INVALID_CREDENTIALS
            elif user.is_locked(now):
                logger.warning(f"Login attempt on locked account {user.id}")
                failure = "Account is temporarily locked"
            elif user.status != UserStatus.ACTIVE.value:
                logger.warning(f"Login attempt on {user.status} account {user.id}")
                failure = f"Account is {user.status}"
            elif not verify_password(password, user.password_hash):
                failure = INVALID_CREDENTIALS
                await self._record_failure(repo, user, now)
            else:
                await repo.update_fields(
                    user,
                    login_attempts=0,
                    locked_until=None,
                    last_login_at=now,
                )

        if failure:
            raise AuthenticationError(failure)

        logger.info(f"User {user.id} logged in")
        return user

    async def _record_failure(self, repo: UserRepository, user: User, now: datetime) -> None:
        attempts = user.login_attempts + 1
        if attempts >= self._settings.max_login_attempts:
            locked_until = now + timedelta(minutes=self._settings.lockout_minutes)
            await repo.update_fields(user, login_attempts=0, locked_until=locked_until)
            logger.warning(
                f"Account {user.id} locked until {locked_until.isoformat()} "
                f"after {attempts} failed logins"
            )
        else:
            await repo.update_fields(user, login_attempts=attempts)
            logger.warning(f"Failed login for account {user.id} ({attempts}/{self._settings.max_login_attempts})")

    async def get_user(self, user_id: UUID) -> User:
        async with self._db.session() as session:
            user = await UserRepository(session).get_by_id(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def soft_delete(self, user_id: UUID, now: Optional[datetime] = None) -> User:
        """Tombstone the account and revoke all its sessions. Ledger rows are kept."""
        now = now or utc_now()
        async with self._db.session() as session:
            repo = UserRepository(session)
            user = await repo.get_by_id(user_id, for_update=True)
            if user is None:
                raise NotFoundError("User", user_id)
            await repo.update_fields(user, deleted_at=now, status=UserStatus.INACTIVE.value)
            revoked = await SessionRepository(session).deactivate_all_for_user(user_id)

        logger.info(f"Soft-deleted user {user_id} ({revoked} sessions revoked)")
        return user

    async def change_password(
        self,
        user_id: UUID,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[UUID] = None,
    ) -> int:
        """
        Replace the password after checking the current one.

        Every other session of the account is revoked in the same unit of
        work; ``keep_session_id`` (the caller's own session) stays valid.

        Returns:
            Number of sessions revoked

        Raises:
            ValidationError: current password wrong, or new equals current
        """
        if new_password == current_password:
            raise ValidationError("New password must differ from the current one")
        new_hash = hash_password(new_password, rounds=self._settings.bcrypt_rounds)

        async with self._db.session() as session:
            repo = UserRepository(session)
            user = await repo.get_by_id(user_id, for_update=True)
            if user is None:
                raise NotFoundError("User", user_id)
            if not verify_password(current_password, user.password_hash):
                logger.warning(f"Password change for user {user_id} rejected: wrong current password")
                raise ValidationError("Current password is incorrect")

            await repo.update_fields(user, password_hash=new_hash, login_attempts=0, locked_until=None)
            revoked = await SessionRepository(session).deactivate_all_for_user(
                user_id, keep_session_id=keep_session_id
            )

        logger.info(f"Password changed for user {user_id} ({revoked} other sessions revoked)")
        return revoked

    async def set_status(self, user_id: UUID, status: UserStatus, reason: Optional[str] = None) -> User:
        """
        Operator status change. Leaving ACTIVE revokes every session, since
        only active accounts may hold one.
        """
        status = UserStatus(status)
        async with self._db.session() as session:
            repo = UserRepository(session)
            user = await repo.get_by_id(user_id, for_update=True)
            if user is None:
                raise NotFoundError("User", user_id)

            previous = user.status
            await repo.update_fields(user, status=status.value)
            revoked = 0
            if status != UserStatus.ACTIVE:
                revoked = await SessionRepository(session).deactivate_all_for_user(user_id)

        logger.info(
            f"User {user_id} status {previous} -> {status.value} "
            f"(reason: {reason or 'n/a'}, {revoked} sessions revoked)"
        )
        return user

    async def get_stats(self, now: Optional[datetime] = None) -> UserStatsResponse:
        now = now or utc_now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)

        async with self._db.session() as session:
            repo = UserRepository(session)
            by_status = await repo.count_by_status()
            new_today = await repo.count_created_since(today)
            new_this_week = await repo.count_created_since(today - timedelta(days=7))
            new_this_month = await repo.count_created_since(today - timedelta(days=30))

        return UserStatsResponse(
            total_users=sum(by_status.values()),
            by_status=by_status,
            new_today=new_today,
            new_this_week=new_this_week,
            new_this_month=new_this_month,
        )
