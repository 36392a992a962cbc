"""
SQLModel ORM Models for CreditFlow

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    BaseModel,
    TimestampMixin,
    UUIDMixin,
    as_utc,
    utc_now,
)
from app.infrastructure.db.models.user import User, UserSession
from app.infrastructure.db.models.plan import Plan, PlanPrice, Feature, PlanFeature
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.credit import CreditBalance, CreditTransaction
from app.infrastructure.db.models.payment import Payment, Refund, ProcessedWebhookEvent


__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "as_utc",
    "utc_now",
    # Identity
    "User",
    "UserSession",
    # Catalog
    "Plan",
    "PlanPrice",
    "Feature",
    "PlanFeature",
    # Billing
    "SubscriptionModel",
    "CreditBalance",
    "CreditTransaction",
    "Payment",
    "Refund",
    "ProcessedWebhookEvent",
]
