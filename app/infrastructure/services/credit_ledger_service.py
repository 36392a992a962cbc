"""
Credit Ledger Service

Owns the append-only credit ledger and the per-user balance cache.
No other component writes ``credit_balances``.

Every mutation is one unit of work: lazily expire a lapsed monthly
allowance, check sufficiency against the cached balance, append the
ledger row with ``balance_before``/``balance_after`` and compare-and-swap
the cache. A lost race rolls the whole unit back and runs it again.

Bucket rules:
- subscription grants replace the monthly allowance (leftovers are
  expired first) and lapse at ``monthly_reset_at``
- every other grant lands in the extra bucket, which never lapses
- consumption spends monthly before extra; reversals spend extra first
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.credits import (
    BalanceResponse,
    CreditBucket,
    LedgerIntegrityReport,
    TransactionType,
    grant_bucket,
    is_grant,
    split_debit,
)
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.base import as_utc, utc_now
from app.infrastructure.db.models.credit import CreditBalance, CreditTransaction
from app.infrastructure.db.repositories.credit_repository import CreditRepository
from app.infrastructure.db.repositories.user_repository import UserRepository
from app.infrastructure.exceptions import (
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


@dataclass
class LedgerWrite:
    """Outcome of one ledger call. ``created`` is False for idempotent replays."""
    transaction: CreditTransaction
    balance: Optional[CreditBalance]
    created: bool


def balance_snapshot(user_id: UUID, balance: Optional[CreditBalance]) -> BalanceResponse:
    """Render a balance row (or its absence) as the public balance view."""
    if balance is None:
        return BalanceResponse(
            user_id=user_id,
            monthly_remaining=0,
            extra_remaining=0,
            total_available=0,
        )
    return BalanceResponse(
        user_id=user_id,
        monthly_remaining=balance.monthly_remaining,
        extra_remaining=balance.extra_remaining,
        total_available=balance.available,
        monthly_credits=balance.monthly_credits,
        monthly_used=balance.monthly_used,
        extra_credits=balance.extra_credits,
        extra_used=balance.extra_used,
        total_earned=balance.total_earned,
        total_consumed=balance.total_consumed,
        monthly_reset_at=as_utc(balance.monthly_reset_at),
    )


class CreditLedgerService:
    """
    Credit accounting over the ledger and the balance cache.

    Public methods open their own retrying unit of work. ``apply`` runs
    inside a caller-owned session so other services (subscriptions,
    payments) can make a grant atomic with their own state change.
    """

    def __init__(self, db: Database):
        self._db = db

    # =========================================================================
    # Core Write Path
    # =========================================================================

    async def apply(
        self,
        session: AsyncSession,
        user_id: UUID,
        transaction_type: TransactionType,
        amount: int,
        *,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        draw_from: Optional[CreditBucket] = None,
    ) -> LedgerWrite:
        """
        Append one ledger row and update the balance cache in ``session``.

        Args:
            session: Caller's transactional session
            user_id: Account whose balance changes
            transaction_type: Row type; fixes the required sign of ``amount``
            amount: Signed credit delta (grants > 0, debits < 0)
            idempotency_key: At most one row is ever written per key
            expires_at: Lapse time of a subscription grant
            draw_from: Bucket a reversal empties first (extra by default)

        Returns:
            LedgerWrite; ``created`` is False when the key was already used

        Raises:
            ValidationError: zero amount, wrong sign, or expiry on a non-expiring grant
            InsufficientCreditsError: debit larger than the cached balance
            NotFoundError: unknown user
            BalanceVersionConflict: lost a concurrent update (retry the unit)
        """
        transaction_type = TransactionType(transaction_type)
        self._validate(transaction_type, amount, expires_at)
        now = now or utc_now()
        repo = CreditRepository(session)

        if idempotency_key:
            existing = await repo.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(f"Ledger key {idempotency_key} already applied, skipping")
                return LedgerWrite(existing, await repo.get_balance(existing.user_id), created=False)

        balance = await self._load_balance(session, repo, user_id)
        await self._expire_if_due(repo, balance, now)

        write_kwargs = dict(
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )

        if transaction_type == TransactionType.SUBSCRIPTION:
            if balance.monthly_remaining > 0:
                await self._expire_monthly(
                    repo, balance, "Unused monthly credits replaced by new period"
                )
            transaction = await self._append(
                repo,
                balance,
                transaction_type,
                amount,
                CreditBucket.MONTHLY,
                {
                    "monthly_credits": amount,
                    "monthly_used": 0,
                    "monthly_reset_at": expires_at,
                    "total_earned": balance.total_earned + amount,
                },
                expires_at=expires_at,
                **write_kwargs,
            )

        elif is_grant(transaction_type):
            transaction = await self._append(
                repo,
                balance,
                transaction_type,
                amount,
                grant_bucket(transaction_type),
                {
                    "extra_credits": balance.extra_credits + amount,
                    "total_earned": balance.total_earned + amount,
                },
                **write_kwargs,
            )

        else:
            magnitude = -amount
            available = balance.available
            from_monthly, from_extra = split_debit(
                transaction_type,
                magnitude,
                balance.monthly_remaining,
                balance.extra_remaining,
                prefer=draw_from,
            )
            if magnitude > available or from_monthly + from_extra != magnitude:
                logger.warning(
                    f"Rejected {transaction_type.value} of {magnitude} for user {user_id}: "
                    f"{available} available"
                )
                raise InsufficientCreditsError(user_id, magnitude, available)

            split = {"monthly": from_monthly, "extra": from_extra}
            write_kwargs["metadata"] = {**(metadata or {}), "split": split}
            transaction = await self._append(
                repo,
                balance,
                transaction_type,
                amount,
                CreditBucket.MONTHLY if from_monthly else CreditBucket.EXTRA,
                {
                    "monthly_used": balance.monthly_used + from_monthly,
                    "extra_used": balance.extra_used + from_extra,
                    "total_consumed": balance.total_consumed + magnitude,
                },
                **write_kwargs,
            )

        logger.info(
            f"Ledger {transaction_type.value} {amount:+d} for user {user_id}: "
            f"{transaction.balance_before} -> {transaction.balance_after}"
        )
        return LedgerWrite(transaction, balance, created=True)

    @staticmethod
    def _validate(
        transaction_type: TransactionType,
        amount: int,
        expires_at: Optional[datetime],
    ) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
            raise ValidationError(
                "Credit amount must be a non-zero integer",
                {"amount": amount},
            )
        if is_grant(transaction_type) and amount < 0:
            raise ValidationError(
                f"{transaction_type.value} transactions must have a positive amount",
                {"type": transaction_type.value, "amount": amount},
            )
        if not is_grant(transaction_type) and amount > 0:
            raise ValidationError(
                f"{transaction_type.value} transactions must have a negative amount",
                {"type": transaction_type.value, "amount": amount},
            )
        if expires_at is not None and transaction_type != TransactionType.SUBSCRIPTION:
            raise ValidationError(
                "Only subscription grants expire; extra credits are permanent",
                {"type": transaction_type.value},
            )

    async def _load_balance(
        self,
        session: AsyncSession,
        repo: CreditRepository,
        user_id: UUID,
    ) -> CreditBalance:
        balance = await repo.get_balance(user_id, for_update=True)
        if balance is not None:
            return balance

        user = await UserRepository(session).get_by_id(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return await repo.create_balance(user_id)

    async def _append(
        self,
        repo: CreditRepository,
        balance: CreditBalance,
        transaction_type: TransactionType,
        amount: int,
        bucket: CreditBucket,
        balance_values: Dict[str, Any],
        *,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        balance_before = balance.available
        await repo.compare_and_swap(balance, **balance_values)

        transaction = CreditTransaction(
            user_id=balance.user_id,
            sequence=balance.version,
            type=transaction_type.value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_before + amount,
            bucket=bucket.value,
            description=description,
            expires_at=expires_at,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            meta=metadata or {},
        )
        return await repo.add(transaction)

    # =========================================================================
    # Expiry
    # =========================================================================

    async def _expire_monthly(
        self,
        repo: CreditRepository,
        balance: CreditBalance,
        description: str,
    ) -> Optional[CreditTransaction]:
        """Zero the monthly bucket, recording the lost remainder for audit."""
        remaining = balance.monthly_remaining
        if remaining <= 0:
            return None

        transaction = await self._append(
            repo,
            balance,
            TransactionType.EXPIRATION,
            -remaining,
            CreditBucket.MONTHLY,
            {
                "monthly_credits": 0,
                "monthly_used": 0,
                "monthly_reset_at": None,
                "total_consumed": balance.total_consumed + remaining,
            },
            description=description,
            metadata={"split": {"monthly": remaining, "extra": 0}},
        )
        logger.info(f"Expired {remaining} monthly credits for user {balance.user_id}")
        return transaction

    async def _expire_if_due(
        self,
        repo: CreditRepository,
        balance: CreditBalance,
        now: datetime,
    ) -> Optional[CreditTransaction]:
        reset_at = as_utc(balance.monthly_reset_at)
        if reset_at is None or now < reset_at:
            return None
        return await self._expire_monthly(repo, balance, "Monthly credits expired")

    async def expire_user_credits(self, user_id: UUID, now: Optional[datetime] = None) -> bool:
        """Expire one user's lapsed monthly allowance. True if a row was written."""
        now = now or utc_now()

        async def operation(session: AsyncSession) -> bool:
            repo = CreditRepository(session)
            balance = await repo.get_balance(user_id, for_update=True)
            if balance is None:
                return False
            return await self._expire_if_due(repo, balance, now) is not None

        return await self._db.run_with_retry(operation, label="credit expiry")

    async def expire_stale_balances(self, now: Optional[datetime] = None, batch_size: int = 500) -> int:
        """
        Sweep: expire every lapsed monthly allowance.

        Each user is expired in its own unit of work so one conflict never
        blocks the rest of the batch.

        Returns:
            Number of users whose credits were expired
        """
        now = now or utc_now()
        async with self._db.session() as session:
            balances = await CreditRepository(session).list_balances_with_expired_monthly(now, batch_size)
            user_ids = [balance.user_id for balance in balances]

        expired = 0
        for user_id in user_ids:
            if await self.expire_user_credits(user_id, now):
                expired += 1

        if expired:
            logger.info(f"Credit expiry sweep expired {expired} balances")
        return expired

    # =========================================================================
    # Public Operations
    # =========================================================================

    async def record_transaction(
        self,
        user_id: UUID,
        transaction_type: TransactionType,
        amount: int,
        *,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> CreditTransaction:
        """
        Record one ledger transaction in its own retrying unit of work.

        Replays of an ``idempotency_key`` return the original row.
        """
        async def operation(session: AsyncSession) -> LedgerWrite:
            return await self.apply(
                session,
                user_id,
                transaction_type,
                amount,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                expires_at=expires_at,
                metadata=metadata,
                now=now,
            )

        write = await self._db.run_with_retry(operation, label="ledger write")
        return write.transaction

    async def grant(
        self,
        user_id: UUID,
        amount: int,
        transaction_type: TransactionType = TransactionType.BONUS,
        **kwargs: Any,
    ) -> CreditTransaction:
        """Add credits (``amount`` > 0)."""
        return await self.record_transaction(user_id, transaction_type, amount, **kwargs)

    async def consume(
        self,
        user_id: UUID,
        amount: int,
        *,
        description: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BalanceResponse:
        """
        Spend ``amount`` credits (a positive number).

        Returns:
            The balance after the debit

        Raises:
            InsufficientCreditsError: nothing was written
        """
        if amount <= 0:
            raise ValidationError("Consumption amount must be positive", {"amount": amount})

        async def operation(session: AsyncSession) -> BalanceResponse:
            write = await self.apply(
                session,
                user_id,
                TransactionType.CONSUMPTION,
                -amount,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                now=now,
            )
            return balance_snapshot(user_id, write.balance)

        return await self._db.run_with_retry(operation, label="credit consumption")

    async def refund_consumption(
        self,
        user_id: UUID,
        amount: int,
        *,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        description: str = "Consumption refunded",
    ) -> CreditTransaction:
        """Give back credits for work that failed after they were consumed."""
        return await self.record_transaction(
            user_id,
            TransactionType.REFUND,
            amount,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )

    async def reverse(
        self,
        session: AsyncSession,
        user_id: UUID,
        requested: int,
        *,
        reference_type: str,
        reference_id: str,
        idempotency_key: str,
        description: str,
        now: Optional[datetime] = None,
        draw_from: Optional[CreditBucket] = None,
    ) -> int:
        """
        Claw back up to ``requested`` credits inside the caller's session.

        The reversal is bounded by what the user still has; credits that
        were already spent are not driven negative. ``draw_from`` names the
        bucket the original grant went into so that bucket is emptied first.

        Returns:
            Credits actually reversed
        """
        repo = CreditRepository(session)
        existing = await repo.get_by_idempotency_key(idempotency_key)
        if existing is not None:
            return -existing.amount

        balance = await repo.get_balance(user_id, for_update=True)
        if balance is None:
            return 0
        await self._expire_if_due(repo, balance, now or utc_now())

        amount = min(requested, balance.available)
        if amount <= 0:
            logger.warning(f"Nothing left to reverse for user {user_id} ({reference_type} {reference_id})")
            return 0

        await self.apply(
            session,
            user_id,
            TransactionType.REVERSAL,
            -amount,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            metadata={"requested": requested},
            now=now,
            draw_from=draw_from,
        )
        return amount

    async def transfer(
        self,
        from_user_id: UUID,
        to_user_id: UUID,
        amount: int,
        *,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> List[CreditTransaction]:
        """
        Move ``amount`` credits between two users atomically.

        The sender is debited monthly-first like any consumption; the
        recipient receives non-expiring extra credits.

        Returns:
            [debit row, credit row]

        Raises:
            InsufficientCreditsError: the sender cannot cover ``amount``
            NotFoundError: the recipient does not exist or was deleted
        """
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer credits to the same user")
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive", {"amount": amount})

        async def operation(session: AsyncSession) -> List[CreditTransaction]:
            repo = CreditRepository(session)
            if await UserRepository(session).get_by_id(to_user_id) is None:
                raise NotFoundError("User", to_user_id)
            # Lock both balances in a stable order
            for user_id in sorted([from_user_id, to_user_id], key=str):
                await repo.get_balance(user_id, for_update=True)

            debit = await self.apply(
                session,
                from_user_id,
                TransactionType.DEBIT,
                -amount,
                description=description or f"Transfer to {to_user_id}",
                reference_type="user",
                reference_id=str(to_user_id),
                idempotency_key=f"transfer:{idempotency_key}:out" if idempotency_key else None,
            )
            credit = await self.apply(
                session,
                to_user_id,
                TransactionType.CREDIT,
                amount,
                description=description or f"Transfer from {from_user_id}",
                reference_type="user",
                reference_id=str(from_user_id),
                idempotency_key=f"transfer:{idempotency_key}:in" if idempotency_key else None,
            )
            return [debit.transaction, credit.transaction]

        return await self._db.run_with_retry(operation, label="credit transfer")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_balance(self, user_id: UUID, now: Optional[datetime] = None) -> BalanceResponse:
        """
        Current balance. A lapsed monthly allowance is expired (and the
        expiration recorded) before the balance is reported.
        """
        now = now or utc_now()

        async def operation(session: AsyncSession) -> BalanceResponse:
            repo = CreditRepository(session)
            balance = await repo.get_balance(user_id)
            if balance is not None:
                await self._expire_if_due(repo, balance, now)
            return balance_snapshot(user_id, balance)

        return await self._db.run_with_retry(operation, label="balance read")

    async def get_history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        async with self._db.session() as session:
            return await CreditRepository(session).history(user_id, limit=limit, offset=offset)

    async def verify_integrity(self, user_id: UUID) -> LedgerIntegrityReport:
        """
        Recompute the balance from the ledger and compare with the cache.

        Checks conservation (sum of amounts equals the cached balance and
        ``total_earned - total_consumed``) and the before/after chain.
        """
        async with self._db.session() as session:
            repo = CreditRepository(session)
            rows = await repo.list_for_user(user_id)
            balance = await repo.get_balance(user_id)

        chain_breaks = []
        expected_before = 0
        for row in rows:
            if row.balance_before != expected_before or row.balance_after != row.balance_before + row.amount:
                chain_breaks.append({
                    "sequence": row.sequence,
                    "expected_before": expected_before,
                    "balance_before": row.balance_before,
                    "balance_after": row.balance_after,
                    "amount": row.amount,
                })
            expected_before = row.balance_after

        ledger_sum = sum(row.amount for row in rows)
        cached = balance.available if balance else 0
        earned = balance.total_earned if balance else 0
        consumed = balance.total_consumed if balance else 0

        report = LedgerIntegrityReport(
            user_id=user_id,
            ledger_sum=ledger_sum,
            cached_available=cached,
            total_earned=earned,
            total_consumed=consumed,
            rows=len(rows),
            chain_breaks=chain_breaks,
            is_consistent=(
                not chain_breaks
                and ledger_sum == cached
                and earned - consumed == cached
            ),
        )
        if not report.is_consistent:
            logger.error(f"Ledger drift for user {user_id}: {report.model_dump()}")
        return report
