"""
Payment Service

Persisted payment attempts and refunds on top of the payment gateway.

A payment row is written before the gateway is called, so a crash
between the two leaves a ``pending`` row that can be reconciled, never
an untracked charge. Confirmation arrives through webhooks and is
applied exactly once: the status check and the ledger key
``payment:<gateway txn id>`` both guard against replays.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import Settings, get_settings
from app.domain.credits import CreditBucket, TransactionType, get_credit_package
from app.domain.payments import CONFIRMABLE_STATUSES, PaymentStatus, PaymentType
from app.domain.plans import Currency
from app.domain.subscription import SubscriptionStatus, can_transition
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.base import utc_now
from app.infrastructure.db.models.payment import Payment, Refund
from app.infrastructure.db.repositories.payment_repository import PaymentRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.user_repository import UserRepository
from app.infrastructure.exceptions import GatewayError, NotFoundError, ValidationError
from app.infrastructure.payments.gateway import GatewayRedirect, PaymentGateway
from app.infrastructure.services.credit_ledger_service import CreditLedgerService
from app.infrastructure.services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)

SUBSCRIPTION_PAYMENT_TYPES = frozenset({PaymentType.SUBSCRIPTION, PaymentType.RENEWAL})


@dataclass
class PaymentInitiation:
    """A freshly created payment and the gateway secret the client confirms with."""
    payment: Payment
    client_secret: Optional[str]


class PaymentService:
    """
    Payment lifecycle: initiate, confirm, refund, cancel.

    Args:
        db: Persistence handle
        ledger: Credit ledger for purchase grants and refund reversals
        subscriptions: Subscription service for period activation / past-due
        gateway: Payment provider adapter
    """

    def __init__(
        self,
        db: Database,
        ledger: CreditLedgerService,
        subscriptions: SubscriptionService,
        gateway: PaymentGateway,
        settings: Optional[Settings] = None,
    ):
        self._db = db
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._gateway = gateway
        self._settings = settings or get_settings()

    # =========================================================================
    # Initiation
    # =========================================================================

    async def initiate(
        self,
        user_id: UUID,
        amount: int,
        currency: Currency,
        payment_type: PaymentType = PaymentType.ONE_TIME,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        plan_id: Optional[UUID] = None,
        subscription_id: Optional[UUID] = None,
        credits: int = 0,
    ) -> PaymentInitiation:
        """
        Create a pending payment and its gateway PaymentIntent.

        Raises:
            ValidationError: bad amount or a subscription payment without a
                subscription of this user
            GatewayError: the gateway refused; the payment is left ``failed``
        """
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", {"amount": amount})
        if payment_type == PaymentType.CREDITS and credits <= 0:
            raise ValidationError("Credit payments must carry a credit amount", {"credits": credits})

        async with self._db.session() as session:
            user = await UserRepository(session).get_by_id(user_id)
            if user is None:
                raise NotFoundError("User", user_id)

            if payment_type in SUBSCRIPTION_PAYMENT_TYPES:
                subscription = (
                    await SubscriptionRepository(session).get_by_id(subscription_id)
                    if subscription_id else None
                )
                if subscription is None or subscription.user_id != user_id:
                    raise ValidationError(
                        "Subscription payments need a subscription owned by the payer",
                        {"subscription_id": str(subscription_id) if subscription_id else None},
                    )
                plan_id = plan_id or subscription.plan_id

            payment = await PaymentRepository(session).add(Payment(
                user_id=user_id,
                subscription_id=subscription_id,
                plan_id=plan_id,
                provider=self._gateway.provider,
                payment_type=payment_type.value,
                status=PaymentStatus.PENDING.value,
                amount=amount,
                currency=currency.value,
                credits=credits,
                meta=metadata or {},
            ))
            customer_id = user.stripe_customer_id

        logger.info(f"Created {payment_type.value} payment {payment.id} of {amount} {currency.value}")

        try:
            intent = await self._gateway.create_payment_intent(
                amount=amount,
                currency=currency.value,
                metadata={
                    "payment_id": str(payment.id),
                    "user_id": str(user_id),
                    "payment_type": payment_type.value,
                },
                customer_id=customer_id,
                idempotency_key=str(payment.id),
            )
        except GatewayError as e:
            e.details["payment_id"] = str(payment.id)
            async with self._db.session() as session:
                repo = PaymentRepository(session)
                failed = await repo.get_by_id(payment.id, for_update=True)
                await repo.update_fields(
                    failed,
                    status=PaymentStatus.FAILED.value,
                    attempts=failed.attempts + 1,
                    failure_reason=e.message[:500],
                )
            logger.warning(f"Payment {payment.id} failed at the gateway: {e.message}")
            raise

        async with self._db.session() as session:
            repo = PaymentRepository(session)
            payment = await repo.get_by_id(payment.id, for_update=True)
            await repo.update_fields(
                payment,
                external_payment_id=intent.id,
                gateway_response=intent.raw,
            )

        return PaymentInitiation(payment=payment, client_secret=intent.client_secret)

    async def purchase_credits(
        self,
        user_id: UUID,
        package_id: str,
        currency: Optional[Currency] = None,
    ) -> PaymentInitiation:
        """Start a one-off purchase of a configured credit package."""
        package = get_credit_package(package_id)
        if package is None:
            raise NotFoundError("CreditPackage", package_id)

        currency = currency or Currency(self._settings.default_currency)
        price = package.prices.get(currency.value)
        if price is None:
            raise ValidationError(
                f"Package '{package_id}' is not sold in {currency.value}",
                {"package_id": package_id, "currency": currency.value},
            )

        return await self.initiate(
            user_id,
            price,
            currency,
            PaymentType.CREDITS,
            {"package_id": package.id},
            credits=package.credits,
        )

    # =========================================================================
    # Confirmation
    # =========================================================================

    async def confirm(
        self,
        external_payment_id: str,
        succeeded: bool,
        failure_reason: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """
        Apply the gateway's verdict on a payment (webhook driven).

        Args:
            external_payment_id: Gateway transaction id
            succeeded: Whether the charge went through
            failure_reason: Gateway's decline message
            payload: Raw gateway object, stored for audit
        """
        async def operation(session: AsyncSession) -> Payment:
            return await self.confirm_in_session(
                session, external_payment_id, succeeded, failure_reason, payload, now
            )

        return await self._db.run_with_retry(operation, label="payment confirmation")

    async def confirm_in_session(
        self,
        session: AsyncSession,
        external_payment_id: str,
        succeeded: bool,
        failure_reason: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        now = now or utc_now()
        repo = PaymentRepository(session)
        payment = await repo.get_by_external_id(external_payment_id, for_update=True)
        if payment is None:
            raise NotFoundError("Payment", external_payment_id)

        status = PaymentStatus(payment.status)
        # A declined intent can still succeed on a later attempt
        confirmable = status in CONFIRMABLE_STATUSES or (succeeded and status == PaymentStatus.FAILED)
        if not confirmable:
            logger.warning(
                f"Payment {payment.id} already {status.value}, ignoring "
                f"{'success' if succeeded else 'failure'} for {external_payment_id}"
            )
            return payment

        if succeeded:
            await self._complete(session, payment, payload, now)
        else:
            await self._fail(session, payment, failure_reason, payload, now)
        return payment

    async def _complete(
        self,
        session: AsyncSession,
        payment: Payment,
        payload: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        payment.status = PaymentStatus.COMPLETED.value
        payment.confirmed_at = now
        payment.failure_reason = None
        if payload is not None:
            payment.gateway_response = payload

        payment_type = PaymentType(payment.payment_type)
        if payment_type == PaymentType.CREDITS and payment.credits > 0:
            write = await self._ledger.apply(
                session,
                payment.user_id,
                TransactionType.PURCHASE,
                payment.credits,
                description=f"Purchased {payment.credits} credits",
                reference_type="payment",
                reference_id=str(payment.id),
                idempotency_key=f"payment:{payment.external_payment_id}",
                metadata={"package_id": (payment.meta or {}).get("package_id")},
                now=now,
            )
            if write.created:
                payment.credits_granted = payment.credits

        elif payment_type in SUBSCRIPTION_PAYMENT_TYPES and payment.subscription_id:
            subscription = await SubscriptionRepository(session).get_by_id(payment.subscription_id)
            if subscription is None or not can_transition(
                SubscriptionStatus(subscription.status), SubscriptionStatus.ACTIVE
            ):
                # Keep the captured charge on record for a manual refund
                payment.meta = {
                    **(payment.meta or {}),
                    "orphaned_subscription_payment": True,
                    "subscription_status": subscription.status if subscription else None,
                }
                logger.warning(
                    f"Payment {payment.id} captured for subscription {payment.subscription_id} "
                    f"which can no longer be activated; flagged for refund"
                )
            else:
                granted_before = subscription.credits_granted
                subscription = await self._subscriptions.activate_period_in_session(
                    session, payment.subscription_id, now=now
                )
                payment.credits_granted = subscription.credits_granted - granted_before

        session.add(payment)
        await session.flush()
        logger.info(
            f"Payment {payment.id} completed ({payment_type.value}, "
            f"{payment.credits_granted} credits granted)"
        )

    async def _fail(
        self,
        session: AsyncSession,
        payment: Payment,
        failure_reason: Optional[str],
        payload: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        payment.status = PaymentStatus.FAILED.value
        payment.attempts += 1
        payment.failure_reason = (failure_reason or "Payment failed")[:500]
        if payload is not None:
            payment.gateway_response = payload
        session.add(payment)
        await session.flush()
        logger.warning(f"Payment {payment.id} failed (attempt {payment.attempts}): {payment.failure_reason}")

        if payment.subscription_id:
            await self._subscriptions.mark_past_due_in_session(
                session, payment.subscription_id, payment.failure_reason, now
            )
            # Retry scheduling and customer emails belong to the dunning worker
            logger.info(f"Dunning notified for subscription {payment.subscription_id}")

    async def mark_processing_in_session(self, session: AsyncSession, external_payment_id: str) -> Optional[Payment]:
        """pending -> processing while the gateway settles an asynchronous method."""
        payment = await PaymentRepository(session).get_by_external_id(external_payment_id, for_update=True)
        if payment is None or payment.status != PaymentStatus.PENDING.value:
            return payment
        payment.status = PaymentStatus.PROCESSING.value
        session.add(payment)
        await session.flush()
        logger.info(f"Payment {payment.id} processing")
        return payment

    # =========================================================================
    # Refunds
    # =========================================================================

    async def refund(
        self,
        payment_id: UUID,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Refund:
        """
        Refund (part of) a completed payment.

        The gateway refund happens first; the bookkeeping (refund row,
        ``refunded_amount``, proportional credit reversal) follows in one
        unit of work.

        Raises:
            ValidationError: payment not completed, or amount out of range
            GatewayError: the gateway refused the refund
        """
        async with self._db.session() as session:
            payment = await self._require(session, payment_id)
            amount = self._check_refundable(payment, amount)
            external_payment_id = payment.external_payment_id
            refunded_so_far = payment.refunded_amount

        if not external_payment_id:
            raise ValidationError("Payment has no gateway transaction to refund", {"payment_id": str(payment_id)})

        gateway_refund = await self._gateway.create_refund(
            external_payment_id,
            amount,
            metadata={"payment_id": str(payment_id), "reason": reason or ""},
            idempotency_key=f"refund:{payment_id}:{refunded_so_far}:{amount}",
        )

        async def operation(session: AsyncSession) -> Refund:
            repo = PaymentRepository(session)
            existing = await repo.get_refund_by_external_id(gateway_refund.id)
            if existing is not None:
                return existing
            payment = await self._require(session, payment_id, for_update=True)
            # A charge.refunded webhook may have booked this refund already, without its id
            claimed = await self._claim_unattributed(repo, payment, amount, gateway_refund.id, reason)
            if claimed is not None:
                return claimed
            self._check_refundable(payment, amount)
            return await self._record_refund(session, payment, amount, reason, gateway_refund.id, now)

        return await self._db.run_with_retry(operation, label="refund bookkeeping")

    async def record_gateway_refunds_in_session(
        self,
        session: AsyncSession,
        charge: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> List[Refund]:
        """
        Book refunds made outside this service (e.g. from the gateway dashboard).

        Refunds already on record, matched by gateway refund id, are skipped;
        one booked earlier without an id is claimed by the listed refund of
        the same amount.
        """
        repo = PaymentRepository(session)
        external_payment_id = charge.get("payment_intent")
        payment = await repo.get_by_external_id(external_payment_id, for_update=True) if external_payment_id else None
        if payment is None:
            raise NotFoundError("Payment", external_payment_id)

        recorded = []
        listed = (charge.get("refunds") or {}).get("data") or []
        for item in listed:
            if await repo.get_refund_by_external_id(item["id"]) is not None:
                continue
            claimed = await self._claim_unattributed(repo, payment, item["amount"], item["id"], item.get("reason"))
            if claimed is not None:
                continue
            amount = min(item["amount"], payment.refundable_amount)
            if amount <= 0:
                continue
            recorded.append(
                await self._record_refund(session, payment, amount, item.get("reason"), item["id"], now)
            )

        # Refund list not expanded on the event: book the outstanding difference
        outstanding = min(charge.get("amount_refunded", 0), payment.amount) - payment.refunded_amount
        if not listed and outstanding > 0:
            recorded.append(
                await self._record_refund(session, payment, outstanding, "gateway", None, now)
            )
        return recorded

    async def _claim_unattributed(
        self,
        repo: PaymentRepository,
        payment: Payment,
        amount: int,
        external_refund_id: str,
        reason: Optional[str],
    ) -> Optional[Refund]:
        """Attach a gateway refund id to a matching refund that was booked without one."""
        refund = await repo.get_unattributed_refund(payment.id, amount)
        if refund is None:
            return None
        refund.external_refund_id = external_refund_id
        if reason:
            refund.reason = reason
        await repo.add_refund(refund)
        logger.info(f"Matched gateway refund {external_refund_id} to refund {refund.id} of payment {payment.id}")
        return refund

    async def _record_refund(
        self,
        session: AsyncSession,
        payment: Payment,
        amount: int,
        reason: Optional[str],
        external_refund_id: Optional[str],
        now: Optional[datetime],
    ) -> Refund:
        repo = PaymentRepository(session)
        previous = await repo.list_refunds(payment.id)
        refund = await repo.add_refund(Refund(
            payment_id=payment.id,
            amount=amount,
            reason=reason,
            external_refund_id=external_refund_id,
        ))

        payment.refunded_amount += amount
        if payment.refundable_amount == 0:
            payment.status = PaymentStatus.REFUNDED.value

        if payment.credits_granted > 0:
            # Cumulative proportion so partial refunds add up to the full grant
            target = payment.credits_granted * payment.refunded_amount // payment.amount
            already = sum(r.credits_reversed for r in previous)
            requested = target - already
            if requested > 0:
                refund.credits_reversed = await self._ledger.reverse(
                    session,
                    payment.user_id,
                    requested,
                    reference_type="refund",
                    reference_id=str(refund.id),
                    idempotency_key=f"refund:{refund.id}",
                    description=f"Credits reversed for refund of payment {payment.id}",
                    now=now,
                    draw_from=(
                        CreditBucket.MONTHLY
                        if PaymentType(payment.payment_type) in SUBSCRIPTION_PAYMENT_TYPES
                        else CreditBucket.EXTRA
                    ),
                )

        session.add_all([payment, refund])
        await session.flush()
        logger.info(
            f"Refunded {amount} of payment {payment.id} "
            f"({payment.refunded_amount}/{payment.amount}, {refund.credits_reversed} credits reversed)"
        )
        return refund

    @staticmethod
    def _check_refundable(payment: Payment, amount: Optional[int]) -> int:
        if payment.status != PaymentStatus.COMPLETED.value:
            raise ValidationError(
                f"Only completed payments can be refunded (payment is {payment.status})",
                {"payment_id": str(payment.id), "status": payment.status},
            )
        remaining = payment.refundable_amount
        amount = remaining if amount is None else amount
        if amount <= 0 or amount > remaining:
            raise ValidationError(
                "Refund amount must be positive and at most the refundable amount",
                {"amount": amount, "refundable": remaining},
            )
        return amount

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel(self, payment_id: UUID, user_id: Optional[UUID] = None) -> Payment:
        """Abandon a pending payment and its PaymentIntent."""
        async with self._db.session() as session:
            payment = await self._require(session, payment_id, user_id=user_id)
            if payment.status != PaymentStatus.PENDING.value:
                raise ValidationError(
                    f"Only pending payments can be cancelled (payment is {payment.status})",
                    {"payment_id": str(payment_id)},
                )
            external_payment_id = payment.external_payment_id

        if external_payment_id:
            await self._gateway.cancel_payment_intent(external_payment_id)

        async def operation(session: AsyncSession) -> Payment:
            repo = PaymentRepository(session)
            payment = await self._require(session, payment_id, for_update=True)
            if payment.status == PaymentStatus.PENDING.value:
                await repo.update_fields(
                    payment,
                    status=PaymentStatus.CANCELLED.value,
                    cancelled_at=utc_now(),
                )
                logger.info(f"Payment {payment.id} cancelled")
            return payment

        return await self._db.run_with_retry(operation, label="payment cancel")

    # =========================================================================
    # Hosted Checkout
    # =========================================================================

    async def start_checkout(self, user_id: UUID, subscription_id: UUID, price_id: str) -> GatewayRedirect:
        """Send the user to hosted checkout for a pending subscription."""
        customer_id = await self._ensure_customer(user_id)
        base = self._settings.frontend_url.rstrip("/")
        return await self._gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=f"{base}/billing/success",
            cancel_url=f"{base}/billing/cancel",
            metadata={"user_id": str(user_id), "subscription_id": str(subscription_id)},
        )

    async def open_portal(self, user_id: UUID) -> GatewayRedirect:
        customer_id = await self._ensure_customer(user_id)
        return await self._gateway.create_portal_session(
            customer_id, f"{self._settings.frontend_url.rstrip('/')}/billing"
        )

    async def _ensure_customer(self, user_id: UUID) -> str:
        async with self._db.session() as session:
            user = await UserRepository(session).get_by_id(user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            email, existing = user.email, user.stripe_customer_id

        customer_id = await self._gateway.get_or_create_customer(str(user_id), email, existing)
        if customer_id != existing:
            async with self._db.session() as session:
                repo = UserRepository(session)
                user = await repo.get_by_id(user_id, for_update=True)
                await repo.update_fields(user, stripe_customer_id=customer_id)
        return customer_id

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, payment_id: UUID, user_id: Optional[UUID] = None) -> Payment:
        """
        Raises:
            NotFoundError: unknown payment, or owned by someone other than ``user_id``
        """
        async with self._db.session() as session:
            return await self._require(session, payment_id, user_id=user_id)

    async def list_for_user(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[Payment]:
        async with self._db.session() as session:
            return await PaymentRepository(session).list_for_user(user_id, limit=limit, offset=offset)

    async def list_refunds(self, payment_id: UUID) -> List[Refund]:
        async with self._db.session() as session:
            return await PaymentRepository(session).list_refunds(payment_id)

    @staticmethod
    async def _require(
        session: AsyncSession,
        payment_id: UUID,
        *,
        for_update: bool = False,
        user_id: Optional[UUID] = None,
    ) -> Payment:
        payment = await PaymentRepository(session).get_by_id(payment_id, for_update=for_update)
        if payment is None or (user_id is not None and payment.user_id != user_id):
            raise NotFoundError("Payment", payment_id)
        return payment
