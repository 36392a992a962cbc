"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, DateTime, Index, text
from sqlmodel import Field

from app.domain.plans import BillingInterval, Currency
from app.domain.subscription import SubscriptionStatus
from app.infrastructure.db.models.base import BaseModel


LIVE_STATUS_PREDICATE = "status IN ('active', 'trialing')"


class SubscriptionModel(BaseModel, table=True):
    """
    Subscription table binding one user to one plan for a billing period.

    Maps to the 'subscriptions' table. A partial unique index allows at
    most one live (active/trialing) subscription per user.

    ``credits_granted`` is a counter maintained in the same transaction as
    each period grant; the ledger stays the source of truth for usage.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_live_per_user",
            "user_id",
            unique=True,
            postgresql_where=text(LIVE_STATUS_PREDICATE),
            sqlite_where=text(LIVE_STATUS_PREDICATE),
        ),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    user_id: UUID = Field(foreign_key="users.id", index=True, nullable=False)
    plan_id: UUID = Field(foreign_key="plans.id", index=True, nullable=False)

    status: str = Field(default=SubscriptionStatus.PENDING.value, max_length=20)
    billing_interval: str = Field(default=BillingInterval.MONTHLY.value, max_length=20)
    currency: str = Field(default=Currency.USD.value, max_length=3)
    amount: int = Field(default=0)

    # Billing period dates
    current_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    current_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    trial_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    trial_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    auto_renew: bool = Field(default=True)

    # Lifecycle bookkeeping
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancelled_reason: Optional[str] = Field(default=None, max_length=500)
    ended_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    past_due_since: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Credits
    credits_per_period: int = Field(default=0)
    credits_granted: int = Field(default=0)

    # Plan switch scheduled for the next period activation
    pending_plan_id: Optional[UUID] = Field(default=None, foreign_key="plans.id")

    external_subscription_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    version: int = Field(default=1, nullable=False)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
