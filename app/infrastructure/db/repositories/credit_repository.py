"""
Credit Ledger Repository

Data access for the append-only ledger and the balance cache.

The balance row is only ever changed through ``compare_and_swap``: an
``UPDATE ... WHERE id = :id AND version = :expected`` that bumps the
version. Zero matched rows means another writer got there first and the
caller's unit of work must be retried.
"""

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.infrastructure.db.models.base import utc_now
from app.infrastructure.db.models.credit import CreditBalance, CreditTransaction
from app.infrastructure.db.repositories.base_repository import BaseRepository
from app.infrastructure.exceptions import BalanceVersionConflict


class CreditRepository(BaseRepository[CreditTransaction]):
    """Repository for ledger rows and the per-user balance cache."""

    def __init__(self, session: AsyncSession):
        super().__init__(CreditTransaction, session)

    # =========================================================================
    # Balance Cache
    # =========================================================================

    async def get_balance(self, user_id: UUID, *, for_update: bool = False) -> Optional[CreditBalance]:
        """
        Load the user's balance row.

        Args:
            user_id: Owner of the balance
            for_update: ``SELECT ... FOR UPDATE`` on backends that support it
        """
        stmt = select(CreditBalance).where(CreditBalance.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        # Always see the committed row, never a stale identity-map copy
        stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_balance(self, user_id: UUID) -> CreditBalance:
        """Insert an empty balance (version 0). Races surface as IntegrityError."""
        balance = CreditBalance(user_id=user_id, version=0)
        self._session.add(balance)
        await self._session.flush()
        return balance

    async def compare_and_swap(self, balance: CreditBalance, **values: Any) -> CreditBalance:
        """
        Write ``values`` to the balance iff nobody changed it since it was read.

        On success the in-memory object reflects the new committed state and
        its version is incremented by one.

        Raises:
            BalanceVersionConflict: the row's version moved underneath us
        """
        expected_version = balance.version
        now = utc_now()
        stmt = (
            update(CreditBalance)
            .where(
                CreditBalance.id == balance.id,
                CreditBalance.version == expected_version,
            )
            .values(**values, version=expected_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            raise BalanceVersionConflict(
                "Credit balance changed concurrently",
                {"user_id": str(balance.user_id), "expected_version": expected_version},
            )

        for key, value in values.items():
            set_committed_value(balance, key, value)
        set_committed_value(balance, "version", expected_version + 1)
        set_committed_value(balance, "updated_at", now)
        return balance

    async def list_balances_with_expired_monthly(self, now: datetime, limit: int = 500) -> List[CreditBalance]:
        """Balances whose monthly allowance lapsed with credits left over."""
        stmt = (
            select(CreditBalance)
            .where(
                CreditBalance.monthly_reset_at.is_not(None),
                CreditBalance.monthly_reset_at <= now,
                CreditBalance.monthly_credits > CreditBalance.monthly_used,
            )
            .order_by(CreditBalance.user_id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Ledger
    # =========================================================================

    async def get_by_idempotency_key(self, key: str) -> Optional[CreditTransaction]:
        stmt = select(CreditTransaction).where(CreditTransaction.idempotency_key == key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        """Newest first."""
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_user(self, user_id: UUID) -> List[CreditTransaction]:
        """Full ledger for a user in write order."""
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.sequence.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
