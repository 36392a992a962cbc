"""
Stripe Webhook Service

Applies verified gateway events to payments and subscriptions.

The processed-event record is written in the same unit of work as the
event's effects, so an event is either fully applied and recorded or
neither. Replays stop at the event log; if two deliveries race past it,
the primary key on ``processed_webhook_events`` and the ledger keys make
the loser roll back, and its retry sees the event as processed.

Handled events:
- payment_intent.succeeded / payment_intent.payment_failed: confirm the payment
- payment_intent.processing: mark the payment processing
- checkout.session.completed: link the gateway subscription id
- invoice.payment_succeeded: open the invoiced billing period
- invoice.payment_failed: mark the subscription past due
- customer.subscription.deleted: cancel the subscription
- charge.refunded: book refunds made at the gateway
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import TERMINAL_STATUSES, SubscriptionStatus
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.payment_repository import WebhookEventRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.exceptions import NotFoundError, ValidationError
from app.infrastructure.services.payment_service import PaymentService
from app.infrastructure.services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _invoice_period(invoice: Dict[str, Any]) -> Dict[str, Optional[datetime]]:
    """Billing period of an invoice, from its first subscription line."""
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    return {
        "start": _timestamp(period.get("start") or invoice.get("period_start")),
        "end": _timestamp(period.get("end") or invoice.get("period_end")),
    }


def _parse_uuid(value: Any) -> Optional[UUID]:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


class StripeWebhookService:
    """Dispatches Stripe events; one unit of work per event."""

    def __init__(
        self,
        db: Database,
        payments: PaymentService,
        subscriptions: SubscriptionService,
    ):
        self._db = db
        self._payments = payments
        self._subscriptions = subscriptions

    async def handle_event(self, event: Dict[str, Any]) -> str:
        """
        Process one verified event.

        Returns:
            "success", "already_processed" or "ignored"
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValidationError("Webhook event is missing id or type")

        async def operation(session: AsyncSession) -> str:
            events = WebhookEventRepository(session)
            if await events.is_processed(event_id):
                logger.info(f"Event {event_id} already processed, skipping")
                return "already_processed"

            logger.info(f"Processing webhook event: {event_type} ({event_id})")
            try:
                outcome = await self._dispatch(session, event_type, event["data"]["object"])
            except NotFoundError as e:
                # Nothing was written before the lookup failed
                logger.warning(f"Webhook {event_type} ({event_id}) references unknown record: {e.message}")
                outcome = "ignored"

            await events.mark_processed(event_id, event_type)
            return outcome

        return await self._db.run_with_retry(operation, label=f"webhook {event_type}")

    async def _dispatch(self, session: AsyncSession, event_type: str, obj: Dict[str, Any]) -> str:
        if event_type == "payment_intent.succeeded":
            await self._payments.confirm_in_session(session, obj["id"], True, payload=obj)

        elif event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            await self._payments.confirm_in_session(
                session, obj["id"], False, failure_reason=error.get("message"), payload=obj
            )

        elif event_type == "payment_intent.processing":
            await self._payments.mark_processing_in_session(session, obj["id"])

        elif event_type == "checkout.session.completed":
            await self._handle_checkout_completed(session, obj)

        elif event_type == "invoice.payment_succeeded":
            await self._handle_invoice_paid(session, obj)

        elif event_type == "invoice.payment_failed":
            subscription = await self._find_subscription(session, obj)
            error = (obj.get("last_finalization_error") or {}).get("message")
            await self._subscriptions.mark_past_due_in_session(
                session, subscription.id, error or "Invoice payment failed"
            )

        elif event_type == "customer.subscription.deleted":
            subscription = await self._find_subscription(session, obj, external_key="id")
            if SubscriptionStatus(subscription.status) in TERMINAL_STATUSES:
                logger.info(f"Subscription {subscription.id} already {subscription.status}")
            else:
                await self._subscriptions.cancel_in_session(
                    session, subscription.id, "Cancelled at payment provider", notify_gateway=False
                )

        elif event_type == "charge.refunded":
            await self._payments.record_gateway_refunds_in_session(session, obj)

        else:
            logger.debug(f"Unhandled event type: {event_type}")
            return "ignored"

        return "success"

    async def _handle_checkout_completed(self, session: AsyncSession, checkout: Dict[str, Any]) -> None:
        metadata = checkout.get("metadata") or {}
        subscription_id = _parse_uuid(metadata.get("subscription_id"))
        external_id = checkout.get("subscription")
        if subscription_id is None or not external_id:
            logger.error("Checkout completed without subscription reference in metadata")
            return
        await self._subscriptions.link_external_in_session(session, subscription_id, external_id)

    async def _handle_invoice_paid(self, session: AsyncSession, invoice: Dict[str, Any]) -> None:
        subscription = await self._find_subscription(session, invoice)
        period = _invoice_period(invoice)
        await self._subscriptions.activate_period_in_session(
            session,
            subscription.id,
            period["start"],
            period["end"],
            external_subscription_id=invoice.get("subscription"),
        )

    @staticmethod
    async def _find_subscription(
        session: AsyncSession,
        obj: Dict[str, Any],
        external_key: str = "subscription",
    ) -> SubscriptionModel:
        """Resolve our subscription from the gateway id, else from echoed metadata."""
        repo = SubscriptionRepository(session)
        external_id = obj.get(external_key)
        subscription = await repo.get_by_external_id(external_id) if external_id else None

        if subscription is None:
            metadata = (obj.get("subscription_details") or {}).get("metadata") or obj.get("metadata") or {}
            internal_id = _parse_uuid(metadata.get("subscription_id"))
            subscription = await repo.get_by_id(internal_id) if internal_id else None

        if subscription is None:
            raise NotFoundError("Subscription", external_id)
        return subscription
