"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, the lifecycle transition table, and DTOs for the subscription
bounded context.
"""

import calendar
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.domain.plans import BillingInterval, Currency


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# =============================================================================
# Lifecycle (Business Logic)
# =============================================================================

# ACTIVE -> ACTIVE is a renewal into the next billing period.
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset({
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.TRIALING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.SUSPENDED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}

LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})

# Statuses that still hold a claim on the user (block a second subscription).
OPEN_STATUSES = frozenset({
    SubscriptionStatus.PENDING,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.SUSPENDED,
})


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Check whether ``current -> target`` is a legal lifecycle move."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_usable(
    status: SubscriptionStatus,
    ended_at: Optional[datetime],
    now: datetime,
) -> bool:
    """
    Whether the subscriber may use paid features right now.

    Live subscriptions are usable. Past-due ones keep access during the
    grace window (the sweep suspends them afterwards). A cancellation made
    after auto-renew was switched off keeps access until ``ended_at``,
    which is then the end of the paid period.
    """
    if status in LIVE_STATUSES or status == SubscriptionStatus.PAST_DUE:
        return True
    if status == SubscriptionStatus.CANCELLED and ended_at is not None:
        return now < ended_at
    return False


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request DTO for starting a subscription."""
    plan_slug: str
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    currency: Currency = Currency.USD
    with_trial: bool = Field(
        default=True,
        description="Start in trialing when the plan offers a trial"
    )
    trial_days: Optional[int] = Field(
        default=None,
        ge=1,
        le=90,
        description="Override the plan's trial length"
    )


class CancelSubscriptionRequest(BaseModel):
    """Request DTO for cancelling the caller's subscription."""
    reason: Optional[str] = Field(default=None, max_length=500)


class AutoRenewRequest(BaseModel):
    auto_renew: bool


class ChangePlanRequest(BaseModel):
    """Switch plan; takes effect at the next period activation."""
    plan_slug: str


class SubscriptionResponse(BaseModel):
    """Persisted subscription as returned by the API."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    billing_interval: BillingInterval
    currency: Currency
    amount: int
    auto_renew: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    ended_at: Optional[datetime] = None
    credits_per_period: int
    credits_granted: int
    created_at: datetime


class SubscriptionStatusResponse(BaseModel):
    """Response DTO for the subscription-status query."""
    subscription_id: Optional[UUID] = None
    plan_slug: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    is_usable: bool = Field(description="Whether paid features are currently available")
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    auto_renew: bool = False
    credits_per_period: int = 0
    credits_granted: int = 0
    credits_used: int = Field(
        default=0,
        description="Derived from the credit ledger's monthly bucket"
    )
