"""
Plan Catalog Repository

Data access for plans, price points and plan features.
"""

from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.plan import Feature, Plan, PlanFeature, PlanPrice
from app.infrastructure.db.repositories.base_repository import BaseRepository


class PlanRepository(BaseRepository[Plan]):
    """
    Repository for the plan catalog.

    Prices and features hang off a plan, so they are served from the same
    repository rather than three tiny ones.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Plan, session)

    # =========================================================================
    # Plans
    # =========================================================================

    async def get_by_slug(self, slug: str) -> Optional[Plan]:
        result = await self._session.execute(select(Plan).where(Plan.slug == slug))
        return result.scalar_one_or_none()

    async def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        """Plans ordered for display."""
        stmt = select(Plan).order_by(Plan.sort_order.asc(), Plan.monthly_price.asc())
        if not include_inactive:
            stmt = stmt.where(Plan.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Prices
    # =========================================================================

    async def get_price(
        self,
        plan_id: UUID,
        currency: str,
        interval: str,
    ) -> Optional[PlanPrice]:
        stmt = select(PlanPrice).where(
            PlanPrice.plan_id == plan_id,
            PlanPrice.currency == currency,
            PlanPrice.interval == interval,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_prices(self, plan_id: UUID, active_only: bool = True) -> List[PlanPrice]:
        stmt = (
            select(PlanPrice)
            .where(PlanPrice.plan_id == plan_id)
            .order_by(PlanPrice.currency, PlanPrice.interval)
        )
        if active_only:
            stmt = stmt.where(PlanPrice.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # Features
    # =========================================================================

    async def get_feature_by_key(self, key: str) -> Optional[Feature]:
        result = await self._session.execute(select(Feature).where(Feature.key == key))
        return result.scalar_one_or_none()

    async def get_plan_feature(self, plan_id: UUID, feature_id: UUID) -> Optional[PlanFeature]:
        stmt = select(PlanFeature).where(
            PlanFeature.plan_id == plan_id,
            PlanFeature.feature_id == feature_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_plan_features(self, plan_id: UUID) -> List[Tuple[PlanFeature, Feature]]:
        """Active features attached to a plan, in display order."""
        stmt = (
            select(PlanFeature, Feature)
            .join(Feature, Feature.id == PlanFeature.feature_id)
            .where(PlanFeature.plan_id == plan_id, Feature.is_active.is_(True))
            .order_by(PlanFeature.sort_order.asc(), Feature.key.asc())
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]
