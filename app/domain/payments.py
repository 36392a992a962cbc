"""
Payment Domain Models

Enums and DTOs for payment attempts and refunds.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.domain.plans import Currency


class PaymentStatus(str, Enum):
    """pending -> processing -> {completed, failed} -> {refunded, cancelled}"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    """What the money is for; decides the side effect on success."""
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    CREDITS = "credits"
    ONE_TIME = "one_time"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"


CONFIRMABLE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


# =============================================================================
# Request/Response DTOs
# =============================================================================

class InitiatePaymentRequest(BaseModel):
    """Request DTO for starting a payment attempt."""
    amount: int = Field(..., gt=0, description="Amount in minor currency units")
    currency: Currency = Currency.USD
    payment_type: PaymentType = PaymentType.ONE_TIME
    plan_id: Optional[UUID] = None
    subscription_id: Optional[UUID] = None
    credits: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PurchaseCreditsRequest(BaseModel):
    package_id: str
    currency: Currency = Currency.USD


class RefundRequest(BaseModel):
    """``amount=None`` refunds whatever is still refundable."""
    amount: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=255)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    subscription_id: Optional[UUID] = None
    plan_id: Optional[UUID] = None
    provider: PaymentProvider
    payment_type: PaymentType
    status: PaymentStatus
    amount: int
    currency: Currency
    credits: int
    credits_granted: int
    refunded_amount: int
    attempts: int
    external_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    client_secret: Optional[str] = Field(
        default=None,
        description="Gateway client secret; only present right after initiation"
    )


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    amount: int
    reason: Optional[str] = None
    external_refund_id: Optional[str] = None
    credits_reversed: int
    created_at: datetime
