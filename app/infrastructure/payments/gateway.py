"""
Payment Gateway Port

The billing core talks to the payment provider only through this
interface, so tests (and a future second provider) can stand in for
Stripe without touching the services.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class GatewayPaymentIntent:
    """Provider-side payment attempt."""
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayRefund:
    id: str
    amount: int
    status: str


@dataclass
class GatewayRedirect:
    """A hosted page the user is sent to (checkout, billing portal)."""
    id: str
    url: str


class PaymentGateway(ABC):
    """Outbound calls to the payment provider plus inbound webhook checks."""

    provider: str = "unknown"

    @abstractmethod
    async def get_or_create_customer(
        self,
        user_id: str,
        email: str,
        existing_customer_id: Optional[str] = None,
    ) -> str:
        """Return the provider customer id for a user."""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        """Start a charge of ``amount`` minor units."""

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> GatewayPaymentIntent:
        """Fetch the provider's view of a charge."""

    @abstractmethod
    async def cancel_payment_intent(self, intent_id: str) -> None:
        """Abandon a charge that has not been captured."""

    @abstractmethod
    async def create_refund(
        self,
        intent_id: str,
        amount: int,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        """Refund ``amount`` minor units of a captured charge."""

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> GatewayRedirect:
        """Hosted checkout for a recurring price."""

    @abstractmethod
    async def create_portal_session(self, customer_id: str, return_url: str) -> GatewayRedirect:
        """Self-service billing portal."""

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> None:
        """Stop provider-side recurring billing."""

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Validate a webhook and return the event as a dict."""
