"""Base CRUD service.

All service classes inherit from this. Provides lookup,
create and delete plus filtered, paginated listing over a
single SQLAlchemy model. Services never commit; the caller owns the
transaction.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class AccountService(BaseService[Account]):
            def __init__(self, db: AsyncSession):
                super().__init__(Account, db, pk="account_id")
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession, pk: str = "id"):
        self.model = model
        self.db = db
        self.pk = getattr(model, pk)

    # ─── Read ──────────────────────────────────────────────

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a single record by primary key."""
        result = await self.db.execute(select(self.model).where(self.pk == id))
        return result.scalar_one_or_none()

    async def list(
        self,
        offset: int = 0,
        limit: int = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        filters: dict[str, Any] = None,
    ) -> tuple[Sequence[ModelType], int]:
        """List records with pagination, filtering, and sorting.

        List values in ``filters`` become ``IN`` clauses.

        Returns:
            Tuple of (items, total_count)
        """
        query = select(self.model)
        count_query = select(func.count()).select_from(self.model)

        if filters:
            for field, value in filters.items():
                if value is None or not hasattr(self.model, field):
                    continue
                col = getattr(self.model, field)
                if isinstance(value, (list, tuple, set, frozenset)):
                    query = query.where(col.in_(list(value)))
                    count_query = count_query.where(col.in_(list(value)))
                else:
                    query = query.where(col == value)
                    count_query = count_query.where(col == value)

        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())

        query = query.offset(offset).limit(limit)

        result = await self.db.execute(query)
        items = result.scalars().all()

        count_result = await self.db.execute(count_query)
        total = count_result.scalar() or 0

        return items, total

    # ─── Create ────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record and flush it so database defaults are loaded."""
        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Delete ────────────────────────────────────────────

    async def hard_delete(self, id: str) -> bool:
        """Permanently delete a record.

        Returns:
            True if deleted, False if not found
        """
        result = await self.db.execute(delete(self.model).where(self.pk == id))
        return (result.rowcount or 0) > 0
