"""
Plan & Pricing Domain Models

Enums and DTOs for the plan catalog: plans, per-currency prices and
feature flags with optional numeric limits.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PlanType(str, Enum):
    """Product tier family."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class Currency(str, Enum):
    """Supported payment currencies."""
    BRL = "BRL"
    USD = "USD"
    EUR = "EUR"


class BillingInterval(str, Enum):
    """Billing interval for prices and subscriptions."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


INTERVAL_MONTHS = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.ANNUAL: 12,
}


# =============================================================================
# Plan DTOs
# =============================================================================

class PlanCreate(BaseModel):
    """Request DTO for creating a plan. Prices are integer minor units."""
    slug: str = Field(..., min_length=2, max_length=60, pattern=r"^[a-z0-9-]+$")
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    plan_type: PlanType = PlanType.BASIC
    monthly_price: int = Field(default=0, ge=0)
    annual_price: int = Field(default=0, ge=0)
    monthly_credits: int = Field(default=0, ge=0)
    trial_days: int = Field(default=0, ge=0, le=90)
    is_active: bool = True
    is_featured: bool = False
    sort_order: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PlanUpdate(BaseModel):
    """Partial update; unset fields are left untouched."""
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    monthly_price: Optional[int] = Field(default=None, ge=0)
    annual_price: Optional[int] = Field(default=None, ge=0)
    monthly_credits: Optional[int] = Field(default=None, ge=0)
    trial_days: Optional[int] = Field(default=None, ge=0, le=90)
    sort_order: Optional[int] = Field(default=None, ge=0)
    metadata: Optional[Dict[str, Any]] = None


class PlanPriceUpsert(BaseModel):
    """Request DTO for setting a plan's price in one currency/interval."""
    currency: Currency
    interval: BillingInterval
    amount: int = Field(..., ge=0)
    interval_count: int = Field(default=1, ge=1)
    stripe_price_id: Optional[str] = None
    is_active: bool = True


class PlanPriceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_id: UUID
    currency: Currency
    interval: BillingInterval
    amount: int
    interval_count: int
    stripe_price_id: Optional[str] = None
    is_active: bool


class FeatureCreate(BaseModel):
    """Request DTO for registering a feature in the catalog."""
    key: str = Field(..., min_length=2, max_length=80, pattern=r"^[a-z0-9_.-]+$")
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None
    category: str = Field(default="general", max_length=50)


class PlanFeatureAttach(BaseModel):
    """Attach a feature to a plan. ``limit_value=None`` means unlimited."""
    feature_key: str
    limit_value: Optional[int] = Field(default=None, ge=0)
    limit_unit: Optional[str] = Field(default=None, max_length=30)
    is_enabled: bool = True
    sort_order: int = Field(default=0, ge=0)


class PlanFeatureResponse(BaseModel):
    key: str
    name: str
    category: str
    limit_value: Optional[int] = None
    limit_unit: Optional[str] = None
    is_enabled: bool = True


class PlanResponse(BaseModel):
    """Public view of a plan with its prices."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    slug: str
    name: str
    description: Optional[str] = None
    plan_type: PlanType
    monthly_price: int
    annual_price: int
    monthly_credits: int
    trial_days: int
    is_active: bool
    is_featured: bool
    sort_order: int
    version: int
    created_at: datetime
    prices: List[PlanPriceResponse] = Field(default_factory=list)
