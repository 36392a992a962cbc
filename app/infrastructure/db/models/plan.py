"""
Plan Catalog Database Models

SQLModel tables for plans, their per-currency prices and feature flags.
"""

from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from app.domain.plans import PlanType
from app.infrastructure.db.models.base import BaseModel


class Plan(BaseModel, table=True):
    """
    Product tier table. Maps to 'plans'.

    Prices are integer minor currency units. ``version`` is bumped on
    every catalog edit so subscribers can tell which revision they bought.
    """

    __tablename__ = "plans"

    slug: str = Field(max_length=60, unique=True, index=True, nullable=False)
    name: str = Field(max_length=100, nullable=False)
    description: Optional[str] = Field(default=None, max_length=500)
    plan_type: str = Field(default=PlanType.BASIC.value, max_length=20)

    monthly_price: int = Field(default=0)
    annual_price: int = Field(default=0)
    monthly_credits: int = Field(default=0)
    trial_days: int = Field(default=0)

    is_active: bool = Field(default=True, index=True)
    is_featured: bool = Field(default=False)
    sort_order: int = Field(default=0)
    version: int = Field(default=1, nullable=False)

    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))


class PlanPrice(BaseModel, table=True):
    """One price point for a plan. Unique per (plan, currency, interval)."""

    __tablename__ = "plan_prices"
    __table_args__ = (
        UniqueConstraint("plan_id", "currency", "interval", name="uq_plan_prices_plan_currency_interval"),
    )

    plan_id: UUID = Field(foreign_key="plans.id", index=True, nullable=False)
    currency: str = Field(max_length=3, nullable=False)
    interval: str = Field(max_length=20, nullable=False)
    amount: int = Field(nullable=False)
    interval_count: int = Field(default=1)
    stripe_price_id: Optional[str] = Field(default=None, max_length=255)
    is_active: bool = Field(default=True)


class Feature(BaseModel, table=True):
    """Catalog of gateable features. Maps to 'features'."""

    __tablename__ = "features"

    key: str = Field(max_length=80, unique=True, index=True, nullable=False)
    name: str = Field(max_length=100, nullable=False)
    description: Optional[str] = Field(default=None, max_length=500)
    category: str = Field(default="general", max_length=50)
    is_active: bool = Field(default=True)


class PlanFeature(BaseModel, table=True):
    """Feature granted by a plan; ``limit_value`` None means unlimited."""

    __tablename__ = "plan_features"
    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )

    plan_id: UUID = Field(foreign_key="plans.id", index=True, nullable=False)
    feature_id: UUID = Field(foreign_key="features.id", index=True, nullable=False)
    limit_value: Optional[int] = Field(default=None)
    limit_unit: Optional[str] = Field(default=None, max_length=30)
    is_enabled: bool = Field(default=True)
    sort_order: int = Field(default=0)
