"""
Seed Plan Catalog Script

Creates the default plans (free, basic, premium, enterprise) with their
BRL/USD prices and feature limits. Safe to re-run: existing plans and
features are left alone, prices and feature links are upserted.

Usage:
    python scripts/seed_catalog.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.domain.plans import (
    BillingInterval,
    Currency,
    FeatureCreate,
    PlanCreate,
    PlanFeatureAttach,
    PlanPriceUpsert,
    PlanType,
)
from app.infrastructure.db.database import Database
from app.infrastructure.exceptions import DuplicateOperationError
from app.infrastructure.services.plan_catalog_service import PlanCatalogService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


FEATURES = [
    FeatureCreate(key="api.requests", name="API requests", category="usage"),
    FeatureCreate(key="projects", name="Projects", category="limits"),
    FeatureCreate(key="team.seats", name="Team seats", category="limits"),
    FeatureCreate(key="support.priority", name="Priority support", category="support"),
]

# slug -> (plan, {currency: (monthly, annual)}, {feature_key: limit})
PLANS = {
    "free": (
        PlanCreate(
            slug="free",
            name="Free",
            description="Try the product with a small monthly allowance",
            plan_type=PlanType.FREE,
            monthly_credits=100,
            sort_order=0,
        ),
        {},
        {"api.requests": 1000, "projects": 1, "team.seats": 1},
    ),
    "basic": (
        PlanCreate(
            slug="basic",
            name="Basic",
            plan_type=PlanType.BASIC,
            monthly_price=1990,
            annual_price=19900,
            monthly_credits=1000,
            trial_days=7,
            sort_order=1,
        ),
        {Currency.BRL: (4990, 49900), Currency.USD: (1990, 19900)},
        {"api.requests": 20000, "projects": 5, "team.seats": 3},
    ),
    "premium": (
        PlanCreate(
            slug="premium",
            name="Premium",
            plan_type=PlanType.PREMIUM,
            monthly_price=4990,
            annual_price=49900,
            monthly_credits=5000,
            trial_days=14,
            is_featured=True,
            sort_order=2,
        ),
        {Currency.BRL: (12990, 129900), Currency.USD: (4990, 49900)},
        {"api.requests": 100000, "projects": 25, "team.seats": 10, "support.priority": None},
    ),
    "enterprise": (
        PlanCreate(
            slug="enterprise",
            name="Enterprise",
            plan_type=PlanType.ENTERPRISE,
            monthly_price=19990,
            annual_price=199900,
            monthly_credits=50000,
            sort_order=3,
        ),
        {Currency.BRL: (49990, 499900), Currency.USD: (19990, 199900)},
        {"api.requests": None, "projects": None, "team.seats": None, "support.priority": None},
    ),
}


async def seed_catalog():
    """Create features, plans, prices and feature links."""
    db = Database.from_settings(settings)
    catalog = PlanCatalogService(db)

    try:
        for feature in FEATURES:
            try:
                await catalog.create_feature(feature)
                logger.info(f"Created feature {feature.key}")
            except DuplicateOperationError:
                logger.info(f"Feature {feature.key} already exists")

        for slug, (plan_data, prices, limits) in PLANS.items():
            try:
                plan = await catalog.create_plan(plan_data)
            except DuplicateOperationError:
                plan = await catalog.get_by_slug(slug)
                logger.info(f"Plan {slug} already exists, updating prices and features")

            for currency, (monthly, annual) in prices.items():
                await catalog.upsert_price(plan.id, PlanPriceUpsert(
                    currency=currency, interval=BillingInterval.MONTHLY, amount=monthly,
                ))
                await catalog.upsert_price(plan.id, PlanPriceUpsert(
                    currency=currency, interval=BillingInterval.ANNUAL, amount=annual,
                ))

            for feature_key, limit in limits.items():
                await catalog.attach_feature(plan.id, PlanFeatureAttach(
                    feature_key=feature_key, limit_value=limit,
                ))

        logger.info(f"Seeded {len(PLANS)} plans and {len(FEATURES)} features")
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(seed_catalog())
