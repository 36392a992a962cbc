"""
Credit Ledger Database Models

SQLModel tables for the append-only credit ledger and the per-user
balance cache that projects it.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, UniqueConstraint
from sqlmodel import Field

from app.domain.credits import CreditBucket
from app.infrastructure.db.models.base import BaseModel, UUIDMixin, utc_now


class CreditBalance(BaseModel, table=True):
    """
    Per-user balance cache. Maps to 'credit_balances'.

    Written only by the credit ledger service, always in the same
    transaction as the ledger row that changed it, and only through a
    compare-and-swap on ``version``.
    """

    __tablename__ = "credit_balances"

    user_id: UUID = Field(foreign_key="users.id", unique=True, index=True, nullable=False)

    monthly_credits: int = Field(default=0, nullable=False)
    monthly_used: int = Field(default=0, nullable=False)
    monthly_reset_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    extra_credits: int = Field(default=0, nullable=False)
    extra_used: int = Field(default=0, nullable=False)

    total_earned: int = Field(default=0, nullable=False)
    total_consumed: int = Field(default=0, nullable=False)

    version: int = Field(default=0, nullable=False)

    @property
    def monthly_remaining(self) -> int:
        return max(0, self.monthly_credits - self.monthly_used)

    @property
    def extra_remaining(self) -> int:
        return max(0, self.extra_credits - self.extra_used)

    @property
    def available(self) -> int:
        return self.monthly_remaining + self.extra_remaining


class CreditTransaction(UUIDMixin, table=True):
    """
    Append-only ledger row. Maps to 'credit_transactions'.

    ``sequence`` is the balance version the row produced, so rows of one
    user are totally ordered and ``(user_id, sequence)`` can never collide
    for two writers that read the same balance.
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_credit_transactions_user_sequence"),
        Index("ix_credit_transactions_reference", "reference_type", "reference_id"),
    )

    user_id: UUID = Field(foreign_key="users.id", index=True, nullable=False)
    sequence: int = Field(sa_type=BigInteger, nullable=False)

    type: str = Field(max_length=20, nullable=False, index=True)
    amount: int = Field(nullable=False)
    balance_before: int = Field(nullable=False)
    balance_after: int = Field(nullable=False)
    bucket: str = Field(default=CreditBucket.EXTRA.value, max_length=10)

    description: Optional[str] = Field(default=None, max_length=255)
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    reference_type: Optional[str] = Field(default=None, max_length=50)
    reference_id: Optional[str] = Field(default=None, max_length=100)
    idempotency_key: Optional[str] = Field(default=None, max_length=200, unique=True, index=True)

    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))

    created_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_type=DateTime(timezone=True),
    )
