"""
Stripe Payment Gateway

Clean Architecture infrastructure adapter for Stripe payment processing.
Handles customers, PaymentIntents, refunds, hosted checkout, the billing
portal and webhook signature verification.

Every StripeError is logged and re-raised as GatewayError so callers
never see provider exception types.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe
from stripe import StripeError

from app.config.settings import Settings
from app.infrastructure.exceptions import ConfigurationError, GatewayError, WebhookSignatureError
from app.infrastructure.payments.gateway import (
    GatewayPaymentIntent,
    GatewayRedirect,
    GatewayRefund,
    PaymentGateway,
)


logger = logging.getLogger(__name__)


def _user_message(error: StripeError) -> str:
    return getattr(error, "user_message", None) or str(error)


def _to_intent(intent: Any) -> GatewayPaymentIntent:
    return GatewayPaymentIntent(
        id=intent["id"],
        status=intent["status"],
        amount=intent["amount"],
        currency=str(intent["currency"]).upper(),
        client_secret=intent.get("client_secret"),
        raw={
            "id": intent["id"],
            "status": intent["status"],
            "amount": intent["amount"],
            "currency": intent["currency"],
        },
    )


class StripeGateway(PaymentGateway):
    """
    Stripe implementation of the payment gateway port.

    Constructed once per process (in the app lifespan) with explicit keys.
    """

    provider = "stripe"

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]):
        self._api_key = api_key
        self._webhook_secret = webhook_secret

        if self._api_key:
            stripe.api_key = self._api_key

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(settings.stripe_secret_key, settings.stripe_webhook_secret)

    def _require_api_key(self, operation: str) -> None:
        if not self._api_key:
            raise ConfigurationError(
                f"Stripe is not configured (needed for {operation})",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

    # =========================================================================
    # Customer Management
    # =========================================================================

    async def create_customer(
        self,
        user_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> str:
        """
        Create a new Stripe customer.

        Args:
            user_id: Internal user ID (stored in metadata)
            email: Customer email for receipts
            name: Optional customer name

        Returns:
            Stripe customer id (cus_...)
        """
        self._require_api_key("create_customer")
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name,
                metadata={
                    "user_id": user_id,
                    "source": "creditflow",
                },
            )
            logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
            return customer.id

        except StripeError as e:
            logger.error(f"Failed to create Stripe customer: {e}")
            raise GatewayError(
                f"Failed to create customer: {_user_message(e)}",
                operation="create_customer",
                original_error=e,
            )

    async def get_or_create_customer(
        self,
        user_id: str,
        email: str,
        existing_customer_id: Optional[str] = None,
    ) -> str:
        """
        Get existing customer or create new one.

        Args:
            user_id: Internal user ID
            email: Customer email
            existing_customer_id: Optional existing Stripe customer ID
        """
        if existing_customer_id:
            self._require_api_key("retrieve_customer")
            try:
                customer = stripe.Customer.retrieve(existing_customer_id)
                if not customer.get("deleted"):
                    return customer.id
            except StripeError:
                logger.warning(f"Customer {existing_customer_id} not found, creating new")

        return await self.create_customer(user_id, email)

    # =========================================================================
    # Payment Intents
    # =========================================================================

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        """
        Create a PaymentIntent for ``amount`` minor units.

        Args:
            amount: Amount in minor currency units
            currency: ISO currency code
            metadata: Correlation data echoed back on webhooks
            customer_id: Optional Stripe customer to attach
            idempotency_key: Stripe idempotency key (our payment id)
        """
        self._require_api_key("create_payment_intent")
        try:
            params: Dict[str, Any] = {
                "amount": amount,
                "currency": currency.lower(),
                "metadata": metadata,
                "automatic_payment_methods": {"enabled": True},
            }
            if customer_id:
                params["customer"] = customer_id

            intent = stripe.PaymentIntent.create(
                **params,
                idempotency_key=idempotency_key,
            )
            logger.info(f"Created PaymentIntent {intent['id']} for {amount} {currency}")
            return _to_intent(intent)

        except StripeError as e:
            logger.error(f"Failed to create PaymentIntent: {e}")
            raise GatewayError(
                f"Failed to create payment: {_user_message(e)}",
                operation="create_payment_intent",
                original_error=e,
            )

    async def retrieve_payment_intent(self, intent_id: str) -> GatewayPaymentIntent:
        self._require_api_key("retrieve_payment_intent")
        try:
            return _to_intent(stripe.PaymentIntent.retrieve(intent_id))
        except StripeError as e:
            logger.error(f"Failed to retrieve PaymentIntent {intent_id}: {e}")
            raise GatewayError(
                f"Failed to retrieve payment: {_user_message(e)}",
                operation="retrieve_payment_intent",
                original_error=e,
            )

    async def cancel_payment_intent(self, intent_id: str) -> None:
        self._require_api_key("cancel_payment_intent")
        try:
            stripe.PaymentIntent.cancel(intent_id)
            logger.info(f"Cancelled PaymentIntent {intent_id}")
        except StripeError as e:
            logger.error(f"Failed to cancel PaymentIntent {intent_id}: {e}")
            raise GatewayError(
                f"Failed to cancel payment: {_user_message(e)}",
                operation="cancel_payment_intent",
                original_error=e,
            )

    # =========================================================================
    # Refunds
    # =========================================================================

    async def create_refund(
        self,
        intent_id: str,
        amount: int,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        """
        Refund part or all of a captured PaymentIntent.

        Args:
            intent_id: PaymentIntent to refund
            amount: Minor units to return
            metadata: Correlation data (our refund reason, payment id)
            idempotency_key: Stripe idempotency key
        """
        self._require_api_key("create_refund")
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                amount=amount,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
            logger.info(f"Created refund {refund['id']} of {amount} for {intent_id}")
            return GatewayRefund(id=refund["id"], amount=refund["amount"], status=refund["status"])

        except StripeError as e:
            logger.error(f"Failed to refund {intent_id}: {e}")
            raise GatewayError(
                f"Failed to refund: {_user_message(e)}",
                operation="create_refund",
                original_error=e,
            )

    # =========================================================================
    # Checkout Session & Customer Portal
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> GatewayRedirect:
        """
        Create a Stripe Checkout Session for a recurring price.

        Uses Hosted Checkout for minimal PCI compliance burden.
        """
        self._require_api_key("create_checkout_session")
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url,
                allow_promotion_codes=True,
                billing_address_collection="auto",
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
            logger.info(f"Created checkout session {session.id} for customer {customer_id}")
            return GatewayRedirect(id=session.id, url=session.url)

        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise GatewayError(
                f"Failed to create checkout: {_user_message(e)}",
                operation="create_checkout_session",
                original_error=e,
            )

    async def create_portal_session(self, customer_id: str, return_url: str) -> GatewayRedirect:
        """
        Create a Billing Portal session for self-service management.
        """
        self._require_api_key("create_portal_session")
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            logger.info(f"Created portal session for customer {customer_id}")
            return GatewayRedirect(id=session.id, url=session.url)

        except StripeError as e:
            logger.error(f"Failed to create portal session: {e}")
            raise GatewayError(
                f"Failed to create portal: {_user_message(e)}",
                operation="create_portal_session",
                original_error=e,
            )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> None:
        """
        Cancel a Stripe subscription.

        Args:
            subscription_id: Stripe subscription ID
            at_period_end: If True, stop renewing but keep the current period
        """
        self._require_api_key("cancel_subscription")
        try:
            if at_period_end:
                stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            else:
                stripe.Subscription.cancel(subscription_id)

            logger.info(
                f"Cancelled subscription {subscription_id}, "
                f"at_period_end={at_period_end}"
            )

        except StripeError as e:
            logger.error(f"Failed to cancel subscription: {e}")
            raise GatewayError(
                f"Failed to cancel: {_user_message(e)}",
                operation="cancel_subscription",
                original_error=e,
            )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            The event as a plain dict

        Raises:
            WebhookSignatureError if payload or signature is invalid
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )
        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )
            # Signature checked; hand back plain JSON rather than StripeObjects
            return json.loads(payload)

        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}", operation="verify_webhook")
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}", operation="verify_webhook")
