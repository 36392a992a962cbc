"""
Payments Infrastructure Module

Payment gateway port and its Stripe adapter.
"""

from app.infrastructure.payments.gateway import (
    GatewayPaymentIntent,
    GatewayRedirect,
    GatewayRefund,
    PaymentGateway,
)
from app.infrastructure.payments.stripe_service import StripeGateway

__all__ = [
    "GatewayPaymentIntent",
    "GatewayRedirect",
    "GatewayRefund",
    "PaymentGateway",
    "StripeGateway",
]
