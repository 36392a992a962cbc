"""
Database Configuration for CreditFlow

Async SQLAlchemy engine and session management.

``Database`` is an explicitly constructed handle: the FastAPI lifespan
(or a script's ``main``) opens it at process start, passes it to the
services that need it and closes it at shutdown. There is no
module-level instance.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from app.config.settings import Settings
from app.infrastructure.exceptions import (
    BalanceVersionConflict,
    ConcurrencyConflictError,
    DuplicateOperationError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver messages that mean "another transaction got there first".
TRANSIENT_ERROR_MARKERS = (
    "database is locked",
    "deadlock detected",
    "could not serialize access",
)

# Unique keys that concurrent writers race for; a rerun finds the winner's row.
# SQLite names the columns, PostgreSQL names the constraint or index.
RACE_KEY_MARKERS = (
    "idempotency_key",
    "credit_transactions.user_id, credit_transactions.sequence",
    "uq_credit_transactions_user_sequence",
    "credit_balances.user_id",
    "ix_credit_balances_user_id",
    "processed_webhook_events",
    "external_refund_id",
    "subscriptions.user_id",
    "uq_subscriptions_one_live_per_user",
)

UNIQUE_VIOLATION_MARKERS = ("unique constraint", "duplicate key")


def normalize_database_url(database_url: str) -> str:
    """Force the async driver for plain postgres:// URLs."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return database_url


def _driver_message(error: DBAPIError) -> str:
    return str(error.orig if error.orig is not None else error).lower()


def is_retryable_error(error: Exception) -> bool:
    """
    Whether a failed unit of work may succeed if simply run again.

    Covers the ledger's compare-and-swap miss, races on the keys listed in
    ``RACE_KEY_MARKERS`` (the retry re-reads and finds the winner's row)
    and lock contention reported by the driver. Any other integrity error
    is a real conflict and is not retried.
    """
    if isinstance(error, BalanceVersionConflict):
        return True
    if isinstance(error, IntegrityError):
        message = _driver_message(error)
        return any(marker in message for marker in RACE_KEY_MARKERS)
    if isinstance(error, DBAPIError):
        message = _driver_message(error)
        return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)
    return False


def is_duplicate_key_error(error: Exception) -> bool:
    """A unique violation on a key that is not a known race key."""
    if not isinstance(error, IntegrityError) or is_retryable_error(error):
        return False
    message = _driver_message(error)
    return any(marker in message for marker in UNIQUE_VIOLATION_MARKERS)


class Database:
    """
    Owns one async engine and its session factory.

    Args:
        database_url: SQLAlchemy URL (postgresql+asyncpg or sqlite+aiosqlite)
        echo: Log emitted SQL
        pool_size: Connection pool size (ignored for SQLite)
        max_overflow: Extra connections beyond pool_size (ignored for SQLite)
        pool_timeout: Seconds to wait for a pooled connection (ignored for SQLite)
        max_retries: Attempts made by ``run_with_retry`` before giving up
    """

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        max_retries: int = 5,
    ):
        self._url = normalize_database_url(database_url)
        self._max_retries = max_retries

        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        if self.is_sqlite:
            # Writers queue on the database lock instead of failing immediately
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
            )

        self._engine: Optional[AsyncEngine] = create_async_engine(self._url, **engine_kwargs)
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Build a handle from application settings."""
        return cls(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            max_retries=settings.ledger_max_retries,
        )

    @property
    def is_sqlite(self) -> bool:
        return self._url.startswith("sqlite")

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database handle has been closed")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Database handle has been closed")
        return self._session_factory

    # =========================================================================
    # Unit of Work
    # =========================================================================

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Transactional session: commits on success, rolls back on any error.

        Usage:
            async with db.session() as session:
                session.add(obj)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def run_with_retry(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        *,
        attempts: Optional[int] = None,
        label: str = "unit of work",
    ) -> T:
        """
        Run ``operation`` in a fresh transactional session, retrying on
        optimistic-lock conflicts.

        Each attempt gets its own session so nothing from a losing attempt
        leaks into the next one.

        Raises:
            ConcurrencyConflictError: every attempt hit a retryable conflict
            DuplicateOperationError: a unique key outside the race keys was already taken
        """
        max_attempts = attempts or self._max_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                async with self.session() as session:
                    return await operation(session)
            except Exception as e:
                if is_duplicate_key_error(e):
                    logger.info(f"{label} hit an existing unique key: {_driver_message(e)}")
                    raise DuplicateOperationError("Record already exists") from e
                if not is_retryable_error(e):
                    raise
                last_error = e
                logger.info(
                    f"{label} conflicted (attempt {attempt}/{max_attempts}): "
                    f"{e.__class__.__name__}"
                )
                # Linear backoff lets contending writers interleave
                await asyncio.sleep(0.005 * attempt)

        logger.warning(f"{label} gave up after {max_attempts} attempts")
        raise ConcurrencyConflictError(
            attempts=max_attempts,
            original_error=last_error,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        """Verify the database is reachable (called on app startup)."""
        async with self.session_factory() as session:
            await session.execute(text("SELECT 1"))

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        # Make sure every table class is registered on the metadata
        import app.infrastructure.db.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def drop_tables(self) -> None:
        """Drop all tables (use with caution, mainly for testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)

    async def close(self) -> None:
        """Close engine and dispose of connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
