"""
Subscription Repository

Data access layer for subscription persistence.
Follows Repository pattern for Clean Architecture.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.subscription import OPEN_STATUSES, SubscriptionStatus
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class SubscriptionRepository(BaseRepository[SubscriptionModel]):
    """
    Repository for subscription data access.

    Lookups used by the lifecycle sweep return rows ordered by id so that
    concurrent sweepers lock in the same order.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_open_for_user(self, user_id: UUID) -> Optional[SubscriptionModel]:
        """
        The user's non-terminal subscription, if any.

        Args:
            user_id: Internal user ID

        Returns:
            The pending/trialing/active/past_due/suspended subscription or None
        """
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.user_id == user_id,
                SubscriptionModel.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .order_by(SubscriptionModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_for_user(self, user_id: UUID) -> Optional[SubscriptionModel]:
        """Most recent subscription in any state (for status display)."""
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.user_id == user_id)
            .order_by(SubscriptionModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionModel]:
        """
        Get subscription by the gateway's subscription ID.

        Args:
            external_subscription_id: Stripe subscription ID (sub_...)
        """
        stmt = select(SubscriptionModel).where(
            SubscriptionModel.external_subscription_id == external_subscription_id
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    # =========================================================================
    # Sweep Queries
    # =========================================================================

    async def list_ended_trials(self, now: datetime, limit: int = 500) -> List[SubscriptionModel]:
        """Trialing subscriptions whose trial window has closed."""
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.TRIALING.value,
                SubscriptionModel.trial_end <= now,
            )
            .order_by(SubscriptionModel.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_period_ended(self, now: datetime, limit: int = 500) -> List[SubscriptionModel]:
        """Active subscriptions whose current period has closed."""
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionModel.current_period_end <= now,
            )
            .order_by(SubscriptionModel.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_past_due_before(self, cutoff: datetime, limit: int = 500) -> List[SubscriptionModel]:
        """Past-due subscriptions that went past due before ``cutoff``."""
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.PAST_DUE.value,
                SubscriptionModel.past_due_since <= cutoff,
            )
            .order_by(SubscriptionModel.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_pending_created_before(self, cutoff: datetime, limit: int = 500) -> List[SubscriptionModel]:
        """Pending subscriptions that never received a first payment."""
        stmt = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.PENDING.value,
                SubscriptionModel.created_at <= cutoff,
            )
            .order_by(SubscriptionModel.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
