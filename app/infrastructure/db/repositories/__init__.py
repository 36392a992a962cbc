"""
Repository Layer for CreditFlow

Exports all repository classes. Every repository wraps a caller-owned
AsyncSession and never commits on its own.
"""

from app.infrastructure.db.repositories.base_repository import BaseRepository
from app.infrastructure.db.repositories.user_repository import (
    UserRepository,
    SessionRepository,
)
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.credit_repository import CreditRepository
from app.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
    WebhookEventRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "UserRepository",
    "SessionRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "CreditRepository",
    "PaymentRepository",
    "WebhookEventRepository",
]
