"""
Payment Repository

Data access for payment attempts, refunds and the processed-webhook log.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.infrastructure.db.models.payment import Payment, ProcessedWebhookEvent, Refund
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class PaymentRepository(BaseRepository[Payment]):
    """Repository for payments and their refunds."""

    def __init__(self, session: AsyncSession):
        super().__init__(Payment, session)

    async def get_by_external_id(
        self,
        external_payment_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Payment]:
        """
        Get payment by gateway transaction ID.

        Args:
            external_payment_id: Stripe PaymentIntent ID (pi_...)
            for_update: Take a row lock (ignored by SQLite)
        """
        stmt = select(Payment).where(Payment.external_payment_id == external_payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: UUID, limit: int = 50, offset: int = 0) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add_refund(self, refund: Refund) -> Refund:
        self._session.add(refund)
        await self._session.flush()
        return refund

    async def list_refunds(self, payment_id: UUID) -> List[Refund]:
        stmt = select(Refund).where(Refund.payment_id == payment_id).order_by(Refund.created_at)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_refund_by_external_id(self, external_refund_id: str) -> Optional[Refund]:
        stmt = select(Refund).where(Refund.external_refund_id == external_refund_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_unattributed_refund(self, payment_id: UUID, amount: int) -> Optional[Refund]:
        """Oldest refund of ``amount`` booked from a webhook that did not carry the refund id."""
        stmt = (
            select(Refund)
            .where(
                Refund.payment_id == payment_id,
                Refund.amount == amount,
                Refund.external_refund_id.is_(None),
            )
            .order_by(Refund.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class WebhookEventRepository:
    """
    DB-backed processed event tracking for gateway webhooks.

    Survives restarts and is shared by every worker process.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def is_processed(self, event_id: str) -> bool:
        """Check if a webhook event has already been processed."""
        result = await self._session.execute(
            select(ProcessedWebhookEvent.event_id).where(ProcessedWebhookEvent.event_id == event_id)
        )
        return result.first() is not None

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        """
        Record a processed webhook event.

        A concurrent duplicate raises IntegrityError on flush, rolling back
        the caller's whole unit of work.
        """
        self._session.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        await self._session.flush()
