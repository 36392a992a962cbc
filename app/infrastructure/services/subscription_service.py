"""
Subscription Service

Drives the subscription lifecycle:

    pending -> trialing -> active -> {past_due, suspended, cancelled, expired}

Every transition that opens a billing period grants that period's
credits through the credit ledger in the same transaction. The grant's
idempotency key ``subscription:<id>:<period_start>`` serializes
concurrent activations of the same period: the loser's insert collides,
its unit of work is rolled back, and the retry sees the period already
active and does nothing.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings, get_settings
from app.domain.credits import TransactionType
from app.domain.plans import INTERVAL_MONTHS, BillingInterval, Currency
from app.domain.subscription import (
    OPEN_STATUSES,
    SubscriptionStatus,
    SubscriptionStatusResponse,
    add_months,
    can_transition,
    is_usable,
)
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.base import as_utc, utc_now
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.credit_repository import CreditRepository
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.user_repository import UserRepository
from app.infrastructure.exceptions import (
    DuplicateOperationError,
    InvalidStateTransitionError,
    NotFoundError,
)
from app.infrastructure.payments.gateway import PaymentGateway
from app.infrastructure.services.credit_ledger_service import CreditLedgerService
from app.infrastructure.services.plan_catalog_service import load_active_plan, resolve_amount


logger = logging.getLogger(__name__)


def period_key(subscription_id: UUID, period_start: datetime) -> str:
    """Ledger idempotency key for one billing period's grant."""
    return f"subscription:{subscription_id}:{as_utc(period_start).isoformat()}"


class SubscriptionService:
    """
    Subscription lifecycle operations.

    Args:
        db: Persistence handle
        ledger: Credit ledger used for period grants
        gateway: Optional payment gateway, used to stop provider-side billing on cancel
        settings: Grace window and pending TTL
    """

    def __init__(
        self,
        db: Database,
        ledger: CreditLedgerService,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
    ):
        self._db = db
        self._ledger = ledger
        self._gateway = gateway
        self._settings = settings or get_settings()

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(
        self,
        user_id: UUID,
        plan_id: UUID,
        billing_interval: BillingInterval = BillingInterval.MONTHLY,
        currency: Currency = Currency.USD,
        *,
        with_trial: bool = True,
        trial_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionModel:
        """
        Create a subscription for ``user_id``.

        Starts ``pending``. Moves straight to ``trialing`` when a trial is
        configured (explicit ``trial_days`` or the plan's own), or to
        ``active`` when the plan costs nothing.

        Raises:
            DuplicateOperationError: the user already has an open subscription
            NotFoundError: unknown user or plan
            ValidationError: plan is not available
        """
        now = now or utc_now()

        async def operation(session: AsyncSession) -> SubscriptionModel:
            if await UserRepository(session).get_by_id(user_id) is None:
                raise NotFoundError("User", user_id)

            repo = SubscriptionRepository(session)
            existing = await repo.get_open_for_user(user_id)
            if existing is not None:
                raise DuplicateOperationError(
                    "User already has an open subscription",
                    key=f"user:{user_id}",
                    existing_id=existing.id,
                )

            plan = await load_active_plan(session, plan_id)
            price = await PlanRepository(session).get_price(plan.id, currency.value, billing_interval.value)
            amount = resolve_amount(plan, price if price and price.is_active else None, billing_interval)

            subscription = await repo.add(SubscriptionModel(
                user_id=user_id,
                plan_id=plan.id,
                status=SubscriptionStatus.PENDING.value,
                billing_interval=billing_interval.value,
                currency=currency.value,
                amount=amount,
                credits_per_period=plan.monthly_credits * INTERVAL_MONTHS[billing_interval],
            ))
            logger.info(f"Created subscription {subscription.id} for user {user_id} on plan {plan.slug}")

            days = trial_days if trial_days is not None else plan.trial_days
            if with_trial and days and days > 0:
                await self._start_trial(session, subscription, days, now)
            elif amount == 0:
                await self._activate(session, subscription, now, now, None)
            return subscription

        return await self._db.run_with_retry(operation, label="subscription create")

    async def start_trial(
        self,
        subscription_id: UUID,
        trial_days: int,
        now: Optional[datetime] = None,
    ) -> SubscriptionModel:
        """pending -> trialing, granting the plan's credits for the trial window."""
        now = now or utc_now()

        async def operation(session: AsyncSession) -> SubscriptionModel:
            subscription = await self._require(session, subscription_id)
            await self._start_trial(session, subscription, trial_days, now)
            return subscription

        return await self._db.run_with_retry(operation, label="trial start")

    async def _start_trial(
        self,
        session: AsyncSession,
        subscription: SubscriptionModel,
        trial_days: int,
        now: datetime,
    ) -> None:
        self._check_transition(subscription, SubscriptionStatus.TRIALING)
        trial_end = now + timedelta(days=trial_days)

        subscription.status = SubscriptionStatus.TRIALING.value
        subscription.trial_start = now
        subscription.trial_end = trial_end
        subscription.current_period_start = now
        subscription.current_period_end = trial_end
        await self._grant_period(session, subscription, now, trial_end, "Trial credits")
        await self._save(session, subscription)
        logger.info(f"Subscription {subscription.id} trialing until {trial_end.isoformat()}")

    # =========================================================================
    # Period Activation
    # =========================================================================

    async def activate_period(
        self,
        subscription_id: UUID,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        *,
        external_subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionModel:
        """
        Open a paid billing period (first payment, renewal or recovery).

        Exactly-once per period: replays with the same ``period_start``
        return the subscription unchanged.
        """
        async def operation(session: AsyncSession) -> SubscriptionModel:
            return await self.activate_period_in_session(
                session,
                subscription_id,
                period_start,
                period_end,
                external_subscription_id=external_subscription_id,
                now=now,
            )

        return await self._db.run_with_retry(operation, label="period activation")

    async def activate_period_in_session(
        self,
        session: AsyncSession,
        subscription_id: UUID,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        *,
        external_subscription_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionModel:
        """``activate_period`` inside a caller-owned unit of work."""
        now = now or utc_now()
        subscription = await self._require(session, subscription_id)
        self._check_transition(subscription, SubscriptionStatus.ACTIVE)

        if period_start is None:
            current_end = as_utc(subscription.current_period_end)
            renewing = subscription.status == SubscriptionStatus.ACTIVE.value and current_end is not None
            period_start = current_end if renewing else now

        if await CreditRepository(session).get_by_idempotency_key(period_key(subscription.id, period_start)):
            logger.info(
                f"Period {period_start.isoformat()} of subscription {subscription.id} already active, skipping"
            )
            return subscription

        await self._activate(session, subscription, period_start, now, period_end, external_subscription_id)
        return subscription

    async def _activate(
        self,
        session: AsyncSession,
        subscription: SubscriptionModel,
        period_start: datetime,
        now: datetime,
        period_end: Optional[datetime],
        external_subscription_id: Optional[str] = None,
    ) -> None:
        self._check_transition(subscription, SubscriptionStatus.ACTIVE)

        if subscription.pending_plan_id is not None:
            plan = await load_active_plan(session, subscription.pending_plan_id)
            interval = BillingInterval(subscription.billing_interval)
            price = await PlanRepository(session).get_price(plan.id, subscription.currency, interval.value)
            subscription.plan_id = plan.id
            subscription.amount = resolve_amount(plan, price if price and price.is_active else None, interval)
            subscription.credits_per_period = plan.monthly_credits * INTERVAL_MONTHS[interval]
            subscription.pending_plan_id = None
            logger.info(f"Subscription {subscription.id} switched to plan {plan.slug}")

        if period_end is None:
            months = INTERVAL_MONTHS[BillingInterval(subscription.billing_interval)]
            period_end = add_months(period_start, months)

        previous = subscription.status
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.past_due_since = None
        subscription.ended_at = None
        if external_subscription_id:
            subscription.external_subscription_id = external_subscription_id

        await self._grant_period(session, subscription, period_start, period_end, "Subscription period credits")
        await self._save(session, subscription)
        logger.info(
            f"Subscription {subscription.id} {previous} -> active for "
            f"{period_start.isoformat()} .. {period_end.isoformat()}"
        )

    async def _grant_period(
        self,
        session: AsyncSession,
        subscription: SubscriptionModel,
        period_start: datetime,
        period_end: datetime,
        description: str,
    ) -> None:
        if subscription.credits_per_period <= 0:
            return
        write = await self._ledger.apply(
            session,
            subscription.user_id,
            TransactionType.SUBSCRIPTION,
            subscription.credits_per_period,
            description=description,
            reference_type="subscription",
            reference_id=str(subscription.id),
            idempotency_key=period_key(subscription.id, period_start),
            expires_at=period_end,
        )
        if write.created:
            subscription.credits_granted += subscription.credits_per_period

    # =========================================================================
    # Payment Problems
    # =========================================================================

    async def mark_past_due(
        self,
        subscription_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionModel:
        async def operation(session: AsyncSession) -> SubscriptionModel:
            return await self.mark_past_due_in_session(session, subscription_id, reason, now)

        return await self._db.run_with_retry(operation, label="mark past due")

    async def mark_past_due_in_session(
        self,
        session: AsyncSession,
        subscription_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionModel:
        """
        active -> past_due after a failed renewal charge.

        Already past-due subscriptions keep their original ``past_due_since``
        so retries do not extend the grace window. Other states are left
        alone; a trial simply runs out.
        """
        subscription = await self._require(session, subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            logger.info(
                f"Payment failure for subscription {subscription.id} in status "
                f"{subscription.status}, no transition"
            )
            return subscription

        subscription.status = SubscriptionStatus.PAST_DUE.value
        subscription.past_due_since = now or utc_now()
        if reason:
            subscription.meta = {**(subscription.meta or {}), "last_payment_failure": reason}
        await self._save(session, subscription)
        logger.warning(f"Subscription {subscription.id} is past due: {reason or 'payment failed'}")
        return subscription

    # =========================================================================
    # User Actions
    # =========================================================================

    async def cancel(
        self,
        subscription_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        *,
        notify_gateway: bool = True,
    ) -> SubscriptionModel:
        """
        Cancel a subscription.

        If auto-renew had already been switched off, access remains until the
        end of the paid period; otherwise the cancellation is immediate.
        """
        async def operation(session: AsyncSession) -> SubscriptionModel:
            return await self.cancel_in_session(
                session, subscription_id, reason, now, notify_gateway=notify_gateway
            )

        return await self._db.run_with_retry(operation, label="subscription cancel")

    async def cancel_in_session(
        self,
        session: AsyncSession,
        subscription_id: UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        *,
        notify_gateway: bool = True,
    ) -> SubscriptionModel:
        now = now or utc_now()
        subscription = await self._require(session, subscription_id)
        self._check_transition(subscription, SubscriptionStatus.CANCELLED)

        period_end = as_utc(subscription.current_period_end)
        keep_access = (
            not subscription.auto_renew
            and subscription.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)
            and period_end is not None
            and now < period_end
        )

        if notify_gateway and self._gateway and subscription.external_subscription_id:
            await self._gateway.cancel_subscription(
                subscription.external_subscription_id,
                at_period_end=keep_access,
            )

        previous = subscription.status
        ended_at = period_end if keep_access else now
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = now
        subscription.cancelled_reason = reason
        subscription.auto_renew = False
        subscription.ended_at = ended_at
        await self._save(session, subscription)
        logger.info(
            f"Subscription {subscription.id} {previous} -> cancelled "
            f"(access until {ended_at.isoformat()})"
        )
        return subscription

    async def link_external_in_session(
        self,
        session: AsyncSession,
        subscription_id: UUID,
        external_subscription_id: str,
    ) -> SubscriptionModel:
        """Record the gateway's id for a subscription billed through hosted checkout."""
        subscription = await self._require(session, subscription_id)
        if subscription.external_subscription_id != external_subscription_id:
            subscription.external_subscription_id = external_subscription_id
            await self._save(session, subscription)
            logger.info(f"Linked subscription {subscription.id} to {external_subscription_id}")
        return subscription

    async def cancel_for_user(self, user_id: UUID, reason: Optional[str] = None) -> SubscriptionModel:
        subscription = await self.get_open_for_user(user_id)
        return await self.cancel(subscription.id, reason)

    async def set_auto_renew(self, user_id: UUID, enabled: bool) -> SubscriptionModel:
        async def operation(session: AsyncSession) -> SubscriptionModel:
            subscription = await self._require_open(session, user_id)
            subscription.auto_renew = enabled
            await self._save(session, subscription)
            logger.info(f"Subscription {subscription.id} auto_renew={enabled}")
            return subscription

        return await self._db.run_with_retry(operation, label="auto-renew toggle")

    async def change_plan(self, user_id: UUID, plan_id: UUID) -> SubscriptionModel:
        """Schedule a plan switch for the next period activation."""
        async def operation(session: AsyncSession) -> SubscriptionModel:
            subscription = await self._require_open(session, user_id)
            plan = await load_active_plan(session, plan_id)
            subscription.pending_plan_id = None if plan.id == subscription.plan_id else plan.id
            await self._save(session, subscription)
            logger.info(f"Subscription {subscription.id} will switch to plan {plan.slug} at next period")
            return subscription

        return await self._db.run_with_retry(operation, label="plan change")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, subscription_id: UUID) -> SubscriptionModel:
        async with self._db.session() as session:
            return await self._require(session, subscription_id)

    async def get_open_for_user(self, user_id: UUID) -> SubscriptionModel:
        async with self._db.session() as session:
            return await self._require_open(session, user_id)

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionModel]:
        async with self._db.session() as session:
            return await SubscriptionRepository(session).get_by_external_id(external_subscription_id)

    async def get_status(self, user_id: UUID, now: Optional[datetime] = None) -> SubscriptionStatusResponse:
        """
        Current state plus period boundaries.

        ``credits_used`` is read from the ledger-owned balance rather than
        a counter on the subscription.
        """
        now = now or utc_now()
        async with self._db.session() as session:
            subscription = await SubscriptionRepository(session).get_latest_for_user(user_id)
            if subscription is None:
                return SubscriptionStatusResponse(is_usable=False)

            plan = await PlanRepository(session).get_by_id(subscription.plan_id)
            balance = await CreditRepository(session).get_balance(user_id)

        status = SubscriptionStatus(subscription.status)
        credits_used = 0
        if balance is not None and status in OPEN_STATUSES:
            credits_used = balance.monthly_used

        return SubscriptionStatusResponse(
            subscription_id=subscription.id,
            plan_slug=plan.slug if plan else None,
            status=status,
            is_usable=is_usable(status, as_utc(subscription.ended_at), now),
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=as_utc(subscription.current_period_end),
            trial_end=as_utc(subscription.trial_end),
            auto_renew=subscription.auto_renew,
            credits_per_period=subscription.credits_per_period,
            credits_granted=subscription.credits_granted,
            credits_used=credits_used,
        )

    # =========================================================================
    # Lifecycle Sweep
    # =========================================================================

    async def process_due_subscriptions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Time-driven transitions, run from cron.

        - trialing past ``trial_end`` -> expired
        - active past period end with auto-renew off -> expired
        - active past period end + grace with auto-renew on (no renewal
          payment arrived) -> past_due
        - past_due longer than the grace window -> suspended
        - pending older than the pending TTL -> expired

        Each subscription moves in its own unit of work and re-checks its
        state under lock, so a webhook racing the sweep wins cleanly.
        """
        now = now or utc_now()
        grace = timedelta(days=self._settings.grace_period_days)
        pending_cutoff = now - timedelta(hours=self._settings.pending_subscription_ttl_hours)

        async with self._db.session() as session:
            repo = SubscriptionRepository(session)
            ended_trials = [s.id for s in await repo.list_ended_trials(now)]
            period_ended = [s.id for s in await repo.list_period_ended(now)]
            overdue = [s.id for s in await repo.list_past_due_before(now - grace)]
            stale_pending = [s.id for s in await repo.list_pending_created_before(pending_cutoff)]

        counts = {"expired": 0, "past_due": 0, "suspended": 0}
        seen = set()

        for subscription_id in ended_trials + stale_pending + period_ended + overdue:
            if subscription_id in seen:
                continue
            seen.add(subscription_id)
            outcome = await self._sweep_one(subscription_id, now, grace, pending_cutoff)
            if outcome:
                counts[outcome] += 1

        logger.info(f"Subscription sweep at {now.isoformat()}: {counts}")
        return counts

    async def _sweep_one(
        self,
        subscription_id: UUID,
        now: datetime,
        grace: timedelta,
        pending_cutoff: datetime,
    ) -> Optional[str]:
        """Apply the due transition to one subscription. Returns the new status or None."""

        async def operation(session: AsyncSession) -> Optional[str]:
            subscription = await self._require(session, subscription_id)
            status = SubscriptionStatus(subscription.status)
            period_end = as_utc(subscription.current_period_end)
            target: Optional[SubscriptionStatus] = None

            if status == SubscriptionStatus.TRIALING:
                trial_end = as_utc(subscription.trial_end)
                if trial_end is not None and trial_end <= now:
                    target = SubscriptionStatus.EXPIRED
                    subscription.ended_at = trial_end

            elif status == SubscriptionStatus.PENDING:
                if as_utc(subscription.created_at) <= pending_cutoff:
                    target = SubscriptionStatus.EXPIRED
                    subscription.ended_at = now

            elif status == SubscriptionStatus.ACTIVE and period_end is not None and period_end <= now:
                if not subscription.auto_renew:
                    target = SubscriptionStatus.EXPIRED
                    subscription.ended_at = period_end
                elif period_end + grace <= now:
                    target = SubscriptionStatus.PAST_DUE
                    subscription.past_due_since = period_end + grace

            elif status == SubscriptionStatus.PAST_DUE:
                since = as_utc(subscription.past_due_since)
                if since is not None and since + grace <= now:
                    target = SubscriptionStatus.SUSPENDED

            if target is None:
                return None

            self._check_transition(subscription, target)
            subscription.status = target.value
            await self._save(session, subscription)
            logger.info(f"Sweep moved subscription {subscription.id} {status.value} -> {target.value}")
            return target.value

        return await self._db.run_with_retry(operation, label="subscription sweep")

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _check_transition(subscription: SubscriptionModel, target: SubscriptionStatus) -> None:
        current = SubscriptionStatus(subscription.status)
        if not can_transition(current, target):
            raise InvalidStateTransitionError(current.value, target.value, str(subscription.id))

    @staticmethod
    async def _require(session: AsyncSession, subscription_id: UUID) -> SubscriptionModel:
        subscription = await SubscriptionRepository(session).get_by_id(subscription_id, for_update=True)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    @staticmethod
    async def _require_open(session: AsyncSession, user_id: UUID) -> SubscriptionModel:
        subscription = await SubscriptionRepository(session).get_open_for_user(user_id)
        if subscription is None:
            raise NotFoundError("Subscription", message="No open subscription for this user")
        return subscription

    @staticmethod
    async def _save(session: AsyncSession, subscription: SubscriptionModel) -> None:
        subscription.version += 1
        session.add(subscription)
        await session.flush()
