"""
Base Repository for CreditFlow

Generic async repository implementing the data access shared by every
aggregate. Repositories are session-scoped: they never commit; the
caller's unit of work (``Database.session``) decides when to.
"""

from typing import Any, Generic, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


# Type variable for generic repository
ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with CRUD operations.

    Args:
        model: The SQLModel table class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    async def get_by_id(self, id: UUID, *, for_update: bool = False) -> Optional[ModelType]:
        """
        Get a single record by its primary key.

        Args:
            id: UUID primary key
            for_update: Take a row lock (ignored by SQLite)

        Returns:
            Model instance or None if not found
        """
        if not for_update:
            return await self._session.get(self._model, id)

        stmt = select(self._model).where(self._model.id == id).with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, db_obj: ModelType) -> ModelType:
        """
        Stage a new record and flush so database defaults and
        constraints apply immediately.
        """
        self._session.add(db_obj)
        await self._session.flush()
        return db_obj

    async def update_fields(self, db_obj: ModelType, **values: Any) -> ModelType:
        """Assign ``values`` onto a loaded record and flush."""
        for field, value in values.items():
            setattr(db_obj, field, value)

        self._session.add(db_obj)
        await self._session.flush()
        return db_obj
