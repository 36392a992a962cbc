"""
Credit Ledger Domain Models

Transaction types, bucket routing rules, purchasable credit packages and
DTOs for the credit accounting bounded context.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    """Ledger row type. The sign of ``amount`` is fixed per type."""
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    BONUS = "bonus"
    CREDIT = "credit"
    REFUND = "refund"
    CONSUMPTION = "consumption"
    DEBIT = "debit"
    EXPIRATION = "expiration"
    REVERSAL = "reversal"


class CreditBucket(str, Enum):
    """Which part of the balance a row touched."""
    MONTHLY = "monthly"
    EXTRA = "extra"


GRANT_TYPES = frozenset({
    TransactionType.SUBSCRIPTION,
    TransactionType.PURCHASE,
    TransactionType.BONUS,
    TransactionType.CREDIT,
    TransactionType.REFUND,
})

DEBIT_TYPES = frozenset({
    TransactionType.CONSUMPTION,
    TransactionType.DEBIT,
    TransactionType.EXPIRATION,
    TransactionType.REVERSAL,
})


def is_grant(transaction_type: TransactionType) -> bool:
    return transaction_type in GRANT_TYPES


def grant_bucket(transaction_type: TransactionType) -> CreditBucket:
    """Subscription grants fill the monthly bucket; everything else is extra."""
    if transaction_type == TransactionType.SUBSCRIPTION:
        return CreditBucket.MONTHLY
    return CreditBucket.EXTRA


def split_debit(
    transaction_type: TransactionType,
    amount: int,
    monthly_remaining: int,
    extra_remaining: int,
    prefer: Optional[CreditBucket] = None,
) -> tuple[int, int]:
    """
    Split a debit of ``amount`` (positive magnitude) across buckets.

    Consumption draws the monthly remainder first and only then extra
    credits, so credits that expire at period end are spent before the
    ones that do not. Reversals draw from ``prefer`` first: the bucket the
    refunded credits were granted into (extra unless told otherwise).
    Expirations only ever touch the monthly bucket.

    Returns:
        (from_monthly, from_extra)
    """
    if transaction_type == TransactionType.EXPIRATION:
        return min(amount, monthly_remaining), 0

    if transaction_type == TransactionType.REVERSAL:
        if prefer == CreditBucket.MONTHLY:
            from_monthly = min(amount, monthly_remaining)
            return from_monthly, amount - from_monthly
        from_extra = min(amount, extra_remaining)
        return amount - from_extra, from_extra

    from_monthly = min(amount, monthly_remaining)
    return from_monthly, amount - from_monthly


# =============================================================================
# Credit Packages (one-off purchases)
# =============================================================================

class CreditPackage(BaseModel):
    """A purchasable bundle of extra credits. Prices are minor units."""
    id: str
    name: str
    credits: int
    prices: Dict[str, int]
    popular: bool = False


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(
        id="starter",
        name="Starter",
        credits=100,
        prices={"BRL": 1990, "USD": 499, "EUR": 449},
    ),
    CreditPackage(
        id="standard",
        name="Standard",
        credits=500,
        prices={"BRL": 7990, "USD": 1999, "EUR": 1799},
        popular=True,
    ),
    CreditPackage(
        id="pro",
        name="Pro",
        credits=1500,
        prices={"BRL": 19990, "USD": 4999, "EUR": 4499},
    ),
]


def get_credit_package(package_id: str) -> Optional[CreditPackage]:
    """Look up a configured credit package by id."""
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    return None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class ConsumeCreditsRequest(BaseModel):
    """Request DTO for spending credits on a unit of work."""
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=255)
    reference_type: Optional[str] = Field(default=None, max_length=50)
    reference_id: Optional[str] = Field(default=None, max_length=100)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class TransferCreditsRequest(BaseModel):
    """Request DTO for sending some of the caller's credits to another account."""
    to_user_id: UUID
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=180)


class ValidateCreditsRequest(BaseModel):
    """Request DTO for checking a debit would succeed, without spending."""
    amount: int = Field(..., gt=0)


class GrantCreditsRequest(BaseModel):
    """Admin request DTO for a manual grant."""
    user_id: UUID
    amount: int = Field(..., gt=0)
    transaction_type: TransactionType = TransactionType.BONUS
    description: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class BalanceResponse(BaseModel):
    """Balance query result; ``total_available`` is what a debit may spend."""
    user_id: UUID
    monthly_remaining: int
    extra_remaining: int
    total_available: int
    monthly_credits: int = 0
    monthly_used: int = 0
    extra_credits: int = 0
    extra_used: int = 0
    total_earned: int = 0
    total_consumed: int = 0
    monthly_reset_at: Optional[datetime] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    bucket: CreditBucket
    description: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class TransferResponse(BaseModel):
    """Both legs of a transfer and the sender's balance afterwards."""
    debit: TransactionResponse
    credit: TransactionResponse
    balance: BalanceResponse


class ValidateCreditsResponse(BaseModel):
    has_enough_credits: bool
    required_amount: int
    total_available: int


class TransactionHistoryResponse(BaseModel):
    items: List[TransactionResponse]
    limit: int
    offset: int


class LedgerIntegrityReport(BaseModel):
    """Result of recomputing a user's balance from the ledger."""
    user_id: UUID
    ledger_sum: int
    cached_available: int
    total_earned: int
    total_consumed: int
    rows: int
    chain_breaks: List[Dict[str, Any]] = Field(default_factory=list)
    is_consistent: bool
