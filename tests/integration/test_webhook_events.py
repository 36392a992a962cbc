"""
Integration Tests for Stripe Webhook Processing

Events are fed to the webhook service as already-verified dicts. Covers
replay protection, payment confirmation, hosted-checkout subscriptions,
invoice failures, provider-side cancellation and dashboard refunds.
"""

from datetime import timedelta
from itertools import count

import pytest

from app.domain.payments import PaymentStatus, PaymentType
from app.domain.plans import Currency
from app.domain.subscription import SubscriptionStatus
from app.infrastructure.db.models.base import as_utc, utc_now
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.payments.gateway import GatewayRefund


_event_ids = count(1)


def make_event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_test_{next(_event_ids)}",
        "type": event_type,
        "data": {"object": obj},
    }


@pytest.fixture
async def purchase(payments, user):
    """A pending purchase of the 500-credit package."""
    initiation = await payments.purchase_credits(user.id, "standard", Currency.USD)
    return initiation.payment


@pytest.fixture
async def linked_subscription(subscriptions, user, plan):
    """An active subscription known to the gateway as ``sub_ext_1``."""
    now = utc_now()
    subscription = await subscriptions.create(user.id, plan.id, now=now)
    return await subscriptions.activate_period(subscription.id, now=now, external_subscription_id="sub_ext_1")


class TestReplayProtection:

    async def test_same_event_twice(self, webhooks, ledger, user, purchase):
        event = make_event("payment_intent.succeeded", {"id": purchase.external_payment_id})

        assert await webhooks.handle_event(event) == "success"
        assert await webhooks.handle_event(event) == "already_processed"

        assert (await ledger.get_balance(user.id)).total_available == 500

    async def test_two_events_for_one_intent_grant_once(self, webhooks, ledger, user, purchase):
        obj = {"id": purchase.external_payment_id}

        assert await webhooks.handle_event(make_event("payment_intent.succeeded", obj)) == "success"
        assert await webhooks.handle_event(make_event("payment_intent.succeeded", obj)) == "success"

        assert (await ledger.get_balance(user.id)).total_available == 500
        assert len(await ledger.get_history(user.id)) == 1

    async def test_unknown_payment_is_ignored_but_recorded(self, webhooks):
        event = make_event("payment_intent.succeeded", {"id": "pi_not_ours"})

        assert await webhooks.handle_event(event) == "ignored"
        assert await webhooks.handle_event(event) == "already_processed"

    async def test_unhandled_type(self, webhooks):
        event = make_event("customer.created", {"id": "cus_1"})

        assert await webhooks.handle_event(event) == "ignored"

    @pytest.mark.parametrize("event", [
        {"type": "payment_intent.succeeded", "data": {"object": {}}},
        {"id": "evt_no_type", "data": {"object": {}}},
    ])
    async def test_incomplete_event(self, webhooks, event):
        with pytest.raises(ValidationError):
            await webhooks.handle_event(event)


class TestPaymentIntentEvents:

    async def test_payment_failed(self, webhooks, payments, purchase):
        event = make_event("payment_intent.payment_failed", {
            "id": purchase.external_payment_id,
            "last_payment_error": {"message": "Your card was declined."},
        })

        assert await webhooks.handle_event(event) == "success"

        payment = await payments.get(purchase.id)
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.failure_reason == "Your card was declined."

    async def test_processing(self, webhooks, payments, purchase):
        await webhooks.handle_event(make_event("payment_intent.processing", {"id": purchase.external_payment_id}))

        assert (await payments.get(purchase.id)).status == PaymentStatus.PROCESSING.value

    async def test_processing_then_succeeded(self, webhooks, payments, purchase):
        obj = {"id": purchase.external_payment_id}
        await webhooks.handle_event(make_event("payment_intent.processing", obj))
        await webhooks.handle_event(make_event("payment_intent.succeeded", obj))

        assert (await payments.get(purchase.id)).status == PaymentStatus.COMPLETED.value

    async def test_charge_after_subscription_cancelled(self, webhooks, payments, subscriptions, user, plan):
        subscription = await subscriptions.create(user.id, plan.id)
        initiation = await payments.initiate(
            user.id, 1990, Currency.USD, PaymentType.SUBSCRIPTION, subscription_id=subscription.id
        )
        await subscriptions.cancel(subscription.id, "changed mind")
        event = make_event("payment_intent.succeeded", {"id": initiation.payment.external_payment_id})

        assert await webhooks.handle_event(event) == "success"
        assert await webhooks.handle_event(event) == "already_processed"

        payment = await payments.get(initiation.payment.id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.meta["orphaned_subscription_payment"] is True
        assert (await subscriptions.get(subscription.id)).status == SubscriptionStatus.CANCELLED.value


class TestSubscriptionEvents:

    async def test_checkout_then_invoice_opens_period(self, webhooks, subscriptions, ledger, user, plan):
        subscription = await subscriptions.create(user.id, plan.id)
        start = utc_now().replace(microsecond=0)
        end = start + timedelta(days=30)

        checkout = make_event("checkout.session.completed", {
            "id": "cs_test",
            "subscription": "sub_ext_9",
            "metadata": {"subscription_id": str(subscription.id), "user_id": str(user.id)},
        })
        assert await webhooks.handle_event(checkout) == "success"
        assert (await subscriptions.get(subscription.id)).external_subscription_id == "sub_ext_9"

        invoice = {
            "id": "in_1",
            "subscription": "sub_ext_9",
            "lines": {"data": [{"period": {"start": int(start.timestamp()), "end": int(end.timestamp())}}]},
        }
        assert await webhooks.handle_event(make_event("invoice.payment_succeeded", invoice)) == "success"
        assert await webhooks.handle_event(make_event("invoice.payment_succeeded", invoice)) == "success"

        active = await subscriptions.get(subscription.id)
        assert active.status == SubscriptionStatus.ACTIVE.value
        assert as_utc(active.current_period_start) == start
        assert as_utc(active.current_period_end) == end
        assert active.credits_granted == 1000
        assert (await ledger.get_balance(user.id)).monthly_remaining == 1000

    async def test_invoice_found_through_metadata(self, webhooks, subscriptions, user, plan):
        subscription = await subscriptions.create(user.id, plan.id)
        start = utc_now().replace(microsecond=0)
        invoice = {
            "id": "in_meta",
            "subscription": "sub_ext_new",
            "subscription_details": {"metadata": {"subscription_id": str(subscription.id)}},
            "period_start": int(start.timestamp()),
            "period_end": int((start + timedelta(days=30)).timestamp()),
        }

        assert await webhooks.handle_event(make_event("invoice.payment_succeeded", invoice)) == "success"

        active = await subscriptions.get(subscription.id)
        assert active.status == SubscriptionStatus.ACTIVE.value
        assert active.external_subscription_id == "sub_ext_new"

    async def test_invoice_failed_marks_past_due(self, webhooks, subscriptions, linked_subscription):
        event = make_event("invoice.payment_failed", {"id": "in_2", "subscription": "sub_ext_1"})

        assert await webhooks.handle_event(event) == "success"

        assert (await subscriptions.get(linked_subscription.id)).status == SubscriptionStatus.PAST_DUE.value

    async def test_invoice_for_unknown_subscription(self, webhooks):
        event = make_event("invoice.payment_failed", {"id": "in_3", "subscription": "sub_unknown"})

        assert await webhooks.handle_event(event) == "ignored"

    async def test_subscription_deleted_cancels_without_calling_back(
        self, webhooks, subscriptions, gateway, linked_subscription
    ):
        obj = {"id": "sub_ext_1", "status": "canceled"}

        assert await webhooks.handle_event(make_event("customer.subscription.deleted", obj)) == "success"
        assert await webhooks.handle_event(make_event("customer.subscription.deleted", obj)) == "success"

        cancelled = await subscriptions.get(linked_subscription.id)
        assert cancelled.status == SubscriptionStatus.CANCELLED.value
        assert cancelled.cancelled_reason == "Cancelled at payment provider"
        gateway.cancel_subscription.assert_not_awaited()


class TestChargeRefunded:

    async def test_dashboard_refund_is_booked_once(self, webhooks, payments, ledger, user, purchase):
        await payments.confirm(purchase.external_payment_id, True)
        charge = {
            "id": "ch_1",
            "payment_intent": purchase.external_payment_id,
            "amount_refunded": 1999,
            "refunds": {"data": [{"id": "re_dash_1", "amount": 1999, "reason": "requested_by_customer"}]},
        }

        assert await webhooks.handle_event(make_event("charge.refunded", charge)) == "success"
        assert await webhooks.handle_event(make_event("charge.refunded", charge)) == "success"

        payment = await payments.get(purchase.id)
        assert payment.status == PaymentStatus.REFUNDED.value
        [refund] = await payments.list_refunds(purchase.id)
        assert refund.external_refund_id == "re_dash_1"
        assert refund.credits_reversed == 500
        assert (await ledger.get_balance(user.id)).total_available == 0

    async def test_unexpanded_refund_list_books_difference(self, webhooks, payments, purchase):
        await payments.confirm(purchase.external_payment_id, True)
        charge = {"id": "ch_2", "payment_intent": purchase.external_payment_id, "amount_refunded": 500}

        assert await webhooks.handle_event(make_event("charge.refunded", charge)) == "success"

        payment = await payments.get(purchase.id)
        assert payment.refunded_amount == 500
        assert payment.status == PaymentStatus.COMPLETED.value

    async def test_webhook_before_api_bookkeeping_is_claimed(
        self, webhooks, payments, ledger, gateway, user, purchase
    ):
        await payments.confirm(purchase.external_payment_id, True)

        async def refund_with_early_webhook(intent_id, amount, metadata=None, idempotency_key=None):
            charge = {"id": "ch_3", "payment_intent": intent_id, "amount_refunded": amount}
            assert await webhooks.handle_event(make_event("charge.refunded", charge)) == "success"
            return GatewayRefund(id="re_early_1", amount=amount, status="succeeded")

        gateway.create_refund.side_effect = refund_with_early_webhook

        refund = await payments.refund(purchase.id, reason="requested_by_customer")

        assert refund.external_refund_id == "re_early_1"
        [booked] = await payments.list_refunds(purchase.id)
        assert booked.id == refund.id
        assert booked.credits_reversed == 500
        payment = await payments.get(purchase.id)
        assert payment.refunded_amount == 1999
        assert payment.status == PaymentStatus.REFUNDED.value
        assert (await ledger.get_balance(user.id)).total_available == 0
        assert (await ledger.verify_integrity(user.id)).is_consistent

    async def test_expanded_event_claims_unattributed_refund(self, webhooks, payments, purchase):
        await payments.confirm(purchase.external_payment_id, True)
        unexpanded = {"id": "ch_4", "payment_intent": purchase.external_payment_id, "amount_refunded": 500}
        expanded = {
            **unexpanded,
            "refunds": {"data": [{"id": "re_dash_2", "amount": 500, "reason": "duplicate"}]},
        }

        await webhooks.handle_event(make_event("charge.refunded", unexpanded))
        await webhooks.handle_event(make_event("charge.refunded", expanded))

        [refund] = await payments.list_refunds(purchase.id)
        assert refund.external_refund_id == "re_dash_2"
        assert refund.reason == "duplicate"
        assert (await payments.get(purchase.id)).refunded_amount == 500
