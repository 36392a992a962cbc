"""
Plan Catalog Service

Plans, price points and feature limits. Every edit to a plan bumps its
``version``.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.plans import (
    BillingInterval,
    Currency,
    FeatureCreate,
    PlanCreate,
    PlanFeatureAttach,
    PlanFeatureResponse,
    PlanPriceUpsert,
    PlanResponse,
    PlanPriceResponse,
    PlanUpdate,
)
from app.infrastructure.db.database import Database
from app.infrastructure.db.models.plan import Feature, Plan, PlanFeature, PlanPrice
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.exceptions import (
    DuplicateOperationError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


def resolve_amount(
    plan: Plan,
    price: Optional[PlanPrice],
    interval: BillingInterval,
) -> int:
    """Explicit price point if there is one, else the plan's base price."""
    if price is not None:
        return price.amount
    if interval == BillingInterval.ANNUAL:
        return plan.annual_price
    return plan.monthly_price


class PlanCatalogService:
    """
    Service for the plan & pricing catalog.
    """

    def __init__(self, db: Database):
        self._db = db

    # =========================================================================
    # Plans
    # =========================================================================

    async def create_plan(self, data: PlanCreate) -> Plan:
        """
        Create a plan.

        Raises:
            DuplicateOperationError: slug already in use
        """
        async with self._db.session() as session:
            repo = PlanRepository(session)
            if await repo.get_by_slug(data.slug):
                raise DuplicateOperationError(f"Plan '{data.slug}' already exists", key=data.slug)

            plan = Plan(
                **data.model_dump(exclude={"metadata", "plan_type"}),
                plan_type=data.plan_type.value,
                meta=data.metadata,
            )
            await repo.add(plan)

        logger.info(f"Created plan {plan.slug} ({plan.id})")
        return plan

    async def update_plan(self, plan_id: UUID, data: PlanUpdate) -> Plan:
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plan = await self._require_plan(repo, plan_id, for_update=True)

            values = data.model_dump(exclude_unset=True, exclude={"metadata"})
            if data.metadata is not None:
                values["meta"] = data.metadata
            values["version"] = plan.version + 1
            await repo.update_fields(plan, **values)

        logger.info(f"Updated plan {plan.slug} to version {plan.version}")
        return plan

    async def get_plan(self, plan_id: UUID) -> Plan:
        async with self._db.session() as session:
            return await self._require_plan(PlanRepository(session), plan_id)

    async def get_by_slug(self, slug: str) -> Plan:
        async with self._db.session() as session:
            plan = await PlanRepository(session).get_by_slug(slug)
        if plan is None:
            raise NotFoundError("Plan", slug)
        return plan

    async def list_plans(self, include_inactive: bool = False) -> List[PlanResponse]:
        """Plans in display order, each with its active prices."""
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plans = await repo.list_plans(include_inactive=include_inactive)
            responses = []
            for plan in plans:
                prices = await repo.list_prices(plan.id)
                responses.append(self._to_response(plan, prices))
            return responses

    async def get_plan_response(self, slug: str) -> PlanResponse:
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plan = await repo.get_by_slug(slug)
            if plan is None:
                raise NotFoundError("Plan", slug)
            return self._to_response(plan, await repo.list_prices(plan.id))

    async def toggle_active(self, plan_id: UUID) -> Plan:
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plan = await self._require_plan(repo, plan_id, for_update=True)
            await repo.update_fields(plan, is_active=not plan.is_active, version=plan.version + 1)

        logger.info(f"Plan {plan.slug} is_active={plan.is_active}")
        return plan

    async def set_featured(self, plan_id: UUID, featured: bool) -> Plan:
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plan = await self._require_plan(repo, plan_id, for_update=True)
            await repo.update_fields(plan, is_featured=featured, version=plan.version + 1)
        return plan

    # =========================================================================
    # Prices
    # =========================================================================

    async def upsert_price(self, plan_id: UUID, data: PlanPriceUpsert) -> PlanPrice:
        """Create or replace the plan's price for one (currency, interval)."""
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plan = await self._require_plan(repo, plan_id, for_update=True)

            price = await repo.get_price(plan_id, data.currency.value, data.interval.value)
            if price is None:
                price = await repo.add(PlanPrice(
                    plan_id=plan_id,
                    currency=data.currency.value,
                    interval=data.interval.value,
                    amount=data.amount,
                    interval_count=data.interval_count,
                    stripe_price_id=data.stripe_price_id,
                    is_active=data.is_active,
                ))
            else:
                await repo.update_fields(
                    price,
                    amount=data.amount,
                    interval_count=data.interval_count,
                    stripe_price_id=data.stripe_price_id,
                    is_active=data.is_active,
                )
            await repo.update_fields(plan, version=plan.version + 1)

        logger.info(
            f"Price for {plan.slug} {data.currency.value}/{data.interval.value} set to {data.amount}"
        )
        return price

    async def resolve_price(
        self,
        plan_id: UUID,
        currency: Currency,
        interval: BillingInterval,
    ) -> PlanPrice:
        """
        Raises:
            NotFoundError: no active price for that currency and interval
        """
        async with self._db.session() as session:
            price = await PlanRepository(session).get_price(plan_id, currency.value, interval.value)
        if price is None or not price.is_active:
            raise NotFoundError(
                "PlanPrice",
                f"{plan_id}/{currency.value}/{interval.value}",
            )
        return price

    async def list_prices(self, plan_id: UUID) -> List[PlanPrice]:
        async with self._db.session() as session:
            return await PlanRepository(session).list_prices(plan_id)

    # =========================================================================
    # Features
    # =========================================================================

    async def create_feature(self, data: FeatureCreate) -> Feature:
        async with self._db.session() as session:
            repo = PlanRepository(session)
            if await repo.get_feature_by_key(data.key):
                raise DuplicateOperationError(f"Feature '{data.key}' already exists", key=data.key)
            feature = Feature(**data.model_dump())
            session.add(feature)
            await session.flush()
        return feature

    async def attach_feature(self, plan_id: UUID, data: PlanFeatureAttach) -> PlanFeature:
        """Attach (or re-configure) a feature on a plan."""
        async with self._db.session() as session:
            repo = PlanRepository(session)
            plan = await self._require_plan(repo, plan_id, for_update=True)
            feature = await repo.get_feature_by_key(data.feature_key)
            if feature is None:
                raise NotFoundError("Feature", data.feature_key)

            values = data.model_dump(exclude={"feature_key"})
            link = await repo.get_plan_feature(plan_id, feature.id)
            if link is None:
                link = PlanFeature(plan_id=plan_id, feature_id=feature.id, **values)
                session.add(link)
                await session.flush()
            else:
                await repo.update_fields(link, **values)
            await repo.update_fields(plan, version=plan.version + 1)
        return link

    async def list_plan_features(self, plan_id: UUID) -> List[PlanFeatureResponse]:
        async with self._db.session() as session:
            rows = await PlanRepository(session).list_plan_features(plan_id)
        return [
            PlanFeatureResponse(
                key=feature.key,
                name=feature.name,
                category=feature.category,
                limit_value=link.limit_value,
                limit_unit=link.limit_unit,
                is_enabled=link.is_enabled,
            )
            for link, feature in rows
        ]

    async def get_feature_limit(self, plan_id: UUID, feature_key: str) -> Optional[int]:
        """
        Numeric limit of a feature on a plan; None means unlimited.

        Raises:
            NotFoundError: the plan does not include the feature (or it is disabled)
        """
        async with self._db.session() as session:
            repo = PlanRepository(session)
            feature = await repo.get_feature_by_key(feature_key)
            link = await repo.get_plan_feature(plan_id, feature.id) if feature else None

        if feature is None or not feature.is_active or link is None or not link.is_enabled:
            raise NotFoundError("PlanFeature", f"{plan_id}/{feature_key}")
        return link.limit_value

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    async def _require_plan(repo: PlanRepository, plan_id: UUID, for_update: bool = False) -> Plan:
        plan = await repo.get_by_id(plan_id, for_update=for_update)
        if plan is None:
            raise NotFoundError("Plan", plan_id)
        return plan

    @staticmethod
    def _to_response(plan: Plan, prices: List[PlanPrice]) -> PlanResponse:
        return PlanResponse(
            id=plan.id,
            slug=plan.slug,
            name=plan.name,
            description=plan.description,
            plan_type=plan.plan_type,
            monthly_price=plan.monthly_price,
            annual_price=plan.annual_price,
            monthly_credits=plan.monthly_credits,
            trial_days=plan.trial_days,
            is_active=plan.is_active,
            is_featured=plan.is_featured,
            sort_order=plan.sort_order,
            version=plan.version,
            created_at=plan.created_at,
            prices=[PlanPriceResponse.model_validate(price) for price in prices],
        )


async def load_active_plan(session: AsyncSession, plan_id: UUID) -> Plan:
    """Plan lookup for other services; inactive plans cannot be bought."""
    plan = await PlanRepository(session).get_by_id(plan_id)
    if plan is None:
        raise NotFoundError("Plan", plan_id)
    if not plan.is_active:
        raise ValidationError(f"Plan '{plan.slug}' is not available", {"plan_id": str(plan_id)})
    return plan
