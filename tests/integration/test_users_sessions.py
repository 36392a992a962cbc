"""
Integration Tests for Accounts and Sessions

Registration, password login with lock-out, soft deletion, and the
session lifecycle (validate, cap, refresh rotation, logout, expiry).
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from app.domain.users import UserStatus
from app.infrastructure.db.models.base import as_utc, utc_now
from app.infrastructure.db.models.user import User
from app.infrastructure.exceptions import (
    AuthenticationError,
    DuplicateOperationError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.security import decode_access_token
from app.infrastructure.services.user_service import UserService


# Same password the make_user fixture registers with
TEST_PASSWORD = "correct-horse-battery"


class TestRegistration:

    async def test_email_is_normalized(self, users, ledger):
        user = await users.register("  Alice@Example.COM ", TEST_PASSWORD, "alice")

        assert user.email == "alice@example.com"
        assert user.password_hash != TEST_PASSWORD
        balance = await ledger.get_balance(user.id)
        assert balance.total_available == 0

    async def test_duplicate_email_any_case(self, users):
        await users.register("bob@example.com", TEST_PASSWORD)

        with pytest.raises(DuplicateOperationError):
            await users.register("BOB@example.com", TEST_PASSWORD)

    async def test_duplicate_username(self, users):
        await users.register("carol@example.com", TEST_PASSWORD, "carol")

        with pytest.raises(DuplicateOperationError):
            await users.register("carol2@example.com", TEST_PASSWORD, "carol")

    async def test_duplicate_email_insert_is_not_retried(self, db, user):
        attempts = []

        async def operation(session):
            attempts.append(1)
            session.add(User(email=user.email, password_hash="not-a-real-hash"))
            await session.flush()

        with pytest.raises(DuplicateOperationError):
            await db.run_with_retry(operation, label="registration")

        assert len(attempts) == 1

    async def test_signup_bonus(self, db, ledger, test_settings):
        service = UserService(db, ledger, test_settings.model_copy(update={"signup_bonus_credits": 25}))

        user = await service.register("dave@example.com", TEST_PASSWORD)

        balance = await ledger.get_balance(user.id)
        assert balance.extra_remaining == 25
        [bonus] = await ledger.get_history(user.id)
        assert bonus.idempotency_key == f"signup:{user.id}"


class TestAuthentication:

    async def test_login(self, users, user):
        logged_in = await users.authenticate(user.email.upper(), TEST_PASSWORD)

        assert logged_in.id == user.id
        assert (await users.get_user(user.id)).last_login_at is not None

    async def test_unknown_email(self, users):
        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            await users.authenticate("nobody@example.com", TEST_PASSWORD)

    async def test_lockout_after_repeated_failures(self, users, user):
        now = utc_now()
        for _ in range(3):
            with pytest.raises(AuthenticationError, match="Invalid email or password"):
                await users.authenticate(user.email, "wrong-password", now=now)

        locked = await users.get_user(user.id)
        assert as_utc(locked.locked_until) == now + timedelta(minutes=15)
        assert locked.login_attempts == 0

        with pytest.raises(AuthenticationError, match="temporarily locked"):
            await users.authenticate(user.email, TEST_PASSWORD, now=now + timedelta(minutes=5))

        unlocked = await users.authenticate(user.email, TEST_PASSWORD, now=now + timedelta(minutes=16))
        assert unlocked.id == user.id

    async def test_success_resets_failure_count(self, users, user):
        with pytest.raises(AuthenticationError):
            await users.authenticate(user.email, "wrong-password")

        await users.authenticate(user.email, TEST_PASSWORD)

        assert (await users.get_user(user.id)).login_attempts == 0

    async def test_soft_deleted_user_cannot_log_in(self, users, sessions, test_settings, user):
        issued = await sessions.create_session(user.id)

        deleted = await users.soft_delete(user.id)

        assert deleted.deleted_at is not None
        with pytest.raises(AuthenticationError):
            await users.authenticate(user.email, TEST_PASSWORD)
        with pytest.raises(AuthenticationError):
            await sessions.validate_session(decode_access_token(issued.access_token, test_settings).session_token)

    async def test_email_stays_reserved_after_delete(self, users, user):
        await users.soft_delete(user.id)

        with pytest.raises(DuplicateOperationError):
            await users.register(user.email, TEST_PASSWORD)

    async def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            await users.get_user(uuid4())


class TestAccountChanges:

    async def test_change_password_keeps_only_current_session(self, users, sessions, user):
        current = await sessions.create_session(user.id)
        await sessions.create_session(user.id)

        revoked = await users.change_password(
            user.id, TEST_PASSWORD, "a-brand-new-secret", keep_session_id=current.session.id
        )

        assert revoked == 1
        [remaining] = await sessions.list_active(user.id)
        assert remaining.id == current.session.id
        assert (await users.authenticate(user.email, "a-brand-new-secret")).id == user.id
        with pytest.raises(AuthenticationError):
            await users.authenticate(user.email, TEST_PASSWORD)

    async def test_change_password_checks_current(self, users, user):
        with pytest.raises(ValidationError, match="incorrect"):
            await users.change_password(user.id, "wrong-password", "a-brand-new-secret")
        with pytest.raises(ValidationError, match="differ"):
            await users.change_password(user.id, TEST_PASSWORD, TEST_PASSWORD)

        assert (await users.authenticate(user.email, TEST_PASSWORD)).id == user.id

    async def test_deactivate_revokes_sessions(self, users, sessions, user):
        await sessions.create_session(user.id)

        inactive = await users.set_status(user.id, UserStatus.INACTIVE, "requested by owner")

        assert inactive.status == UserStatus.INACTIVE.value
        assert await sessions.list_active(user.id) == []
        with pytest.raises(AuthenticationError, match="inactive"):
            await users.authenticate(user.email, TEST_PASSWORD)

    async def test_status_of_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            await users.set_status(uuid4(), UserStatus.ACTIVE)

    async def test_stats_skip_deleted_accounts(self, users, make_user):
        now = utc_now()
        kept, suspended, deleted = await make_user(), await make_user(), await make_user()
        await users.set_status(suspended.id, UserStatus.SUSPENDED)
        await users.soft_delete(deleted.id)

        stats = await users.get_stats(now=now)

        assert stats.total_users == 2
        assert stats.by_status == {"active": 1, "suspended": 1}
        assert stats.new_this_month == 2


class TestSessions:

    async def test_access_token_resolves_session(self, sessions, test_settings, user):
        issued = await sessions.create_session(user.id, "203.0.113.7", "pytest")

        claims = decode_access_token(issued.access_token, test_settings)
        resolved = await sessions.validate_session(claims.session_token)

        assert claims.user_id == user.id
        assert resolved.id == issued.session.id
        assert resolved.ip_address == "203.0.113.7"
        assert issued.expires_in == test_settings.access_token_expire_minutes * 60

    async def test_only_hashes_are_stored(self, sessions, test_settings, user):
        issued = await sessions.create_session(user.id)
        raw = decode_access_token(issued.access_token, test_settings).session_token

        assert issued.session.session_token_hash != raw
        assert issued.session.refresh_token_hash != issued.refresh_token

    async def test_logout(self, sessions, test_settings, user):
        issued = await sessions.create_session(user.id)
        token = decode_access_token(issued.access_token, test_settings).session_token

        assert await sessions.logout(token) is True
        assert await sessions.logout(token) is False
        with pytest.raises(AuthenticationError):
            await sessions.validate_session(token)

    async def test_session_cap_closes_oldest(self, sessions, test_settings, user):
        now = utc_now()
        first = await sessions.create_session(user.id, now=now)
        await sessions.create_session(user.id, now=now + timedelta(minutes=1))
        await sessions.create_session(user.id, now=now + timedelta(minutes=2))

        active = await sessions.list_active(user.id, now=now + timedelta(minutes=3))

        assert len(active) == 2
        assert first.session.id not in {s.id for s in active}
        with pytest.raises(AuthenticationError):
            await sessions.validate_session(
                decode_access_token(first.access_token, test_settings).session_token,
                now=now + timedelta(minutes=3),
            )

    async def test_refresh_rotates_tokens(self, sessions, test_settings, user):
        issued = await sessions.create_session(user.id)
        old_token = decode_access_token(issued.access_token, test_settings).session_token

        rotated = await sessions.refresh(issued.refresh_token)

        assert rotated.session.id == issued.session.id
        assert rotated.refresh_token != issued.refresh_token
        new_token = decode_access_token(rotated.access_token, test_settings).session_token
        assert (await sessions.validate_session(new_token)).id == issued.session.id
        with pytest.raises(AuthenticationError):
            await sessions.validate_session(old_token)
        with pytest.raises(AuthenticationError):
            await sessions.refresh(issued.refresh_token)

    async def test_expired_session(self, sessions, test_settings, user):
        now = utc_now()
        issued = await sessions.create_session(user.id, now=now)
        token = decode_access_token(issued.access_token, test_settings).session_token
        after_expiry = now + timedelta(days=test_settings.refresh_token_expire_days, seconds=1)

        with pytest.raises(AuthenticationError):
            await sessions.validate_session(token, now=after_expiry)
        with pytest.raises(AuthenticationError):
            await sessions.refresh(issued.refresh_token, now=after_expiry)

    async def test_sweep_expired(self, sessions, make_user):
        now = utc_now()
        first, second = await make_user(), await make_user()
        await sessions.create_session(first.id, now=now - timedelta(days=10))
        await sessions.create_session(second.id, now=now)

        assert await sessions.sweep_expired(now) == 1
        assert await sessions.sweep_expired(now) == 0
        assert len(await sessions.list_active(second.id, now)) == 1

    async def test_revoke_all(self, sessions, user):
        await sessions.create_session(user.id)
        await sessions.create_session(user.id)

        assert await sessions.revoke_all(user.id) == 2
        assert await sessions.list_active(user.id) == []
