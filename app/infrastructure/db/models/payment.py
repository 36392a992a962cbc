"""
Payment Database Models

SQLModel tables for payment attempts, refunds and processed gateway
webhook events.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from app.domain.payments import PaymentProvider, PaymentStatus, PaymentType
from app.infrastructure.db.models.base import BaseModel, utc_now


class Payment(BaseModel, table=True):
    """
    One money-movement attempt. Maps to 'payments'.

    ``amount`` and ``currency`` never change once the payment is completed;
    refunds only move ``refunded_amount`` and ``status``.
    """

    __tablename__ = "payments"

    user_id: UUID = Field(foreign_key="users.id", index=True, nullable=False)
    subscription_id: Optional[UUID] = Field(default=None, foreign_key="subscriptions.id", index=True)
    plan_id: Optional[UUID] = Field(default=None, foreign_key="plans.id")

    provider: str = Field(default=PaymentProvider.STRIPE.value, max_length=20)
    payment_type: str = Field(default=PaymentType.ONE_TIME.value, max_length=20)
    status: str = Field(default=PaymentStatus.PENDING.value, max_length=20, index=True)

    amount: int = Field(nullable=False)
    currency: str = Field(max_length=3, nullable=False)
    credits: int = Field(default=0)
    credits_granted: int = Field(default=0)
    refunded_amount: int = Field(default=0)

    # Gateway correlation
    external_payment_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    external_session_id: Optional[str] = Field(default=None, max_length=255)

    attempts: int = Field(default=0)
    failure_reason: Optional[str] = Field(default=None, max_length=500)

    confirmed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    gateway_response: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.refunded_amount


class Refund(BaseModel, table=True):
    """A (partial) refund of a completed payment. Maps to 'refunds'."""

    __tablename__ = "refunds"

    payment_id: UUID = Field(foreign_key="payments.id", index=True, nullable=False)
    amount: int = Field(nullable=False)
    reason: Optional[str] = Field(default=None, max_length=255)
    external_refund_id: Optional[str] = Field(default=None, max_length=255, unique=True)
    credits_reversed: int = Field(default=0)


class ProcessedWebhookEvent(SQLModel, table=True):
    """Gateway events already handled; the primary key makes replays no-ops."""

    __tablename__ = "processed_webhook_events"

    event_id: str = Field(primary_key=True, max_length=255)
    event_type: str = Field(max_length=100, nullable=False)
    processed_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_type=DateTime(timezone=True),
        index=True,
    )
