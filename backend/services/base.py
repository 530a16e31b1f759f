"""Base CRUD service bound to one tenant.

All service classes inherit from this. Every query is filtered on the
organization the service was constructed with; there is no method that
takes a different organization_id. Soft-delete filtering applies to
models that carry the SoftDeleteMixin columns.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from core.exceptions import NotFoundError
from db.base import TenantModel

ModelType = TypeVar("ModelType", bound=TenantModel)


class TenantScopedService(Generic[ModelType]):
    """Generic CRUD service for a tenant-owned SQLAlchemy model.

    Usage:
        class ExecutionService(TenantScopedService[Execution]):
            def __init__(self, db: AsyncSession, organization_id: str):
                super().__init__(Execution, db, organization_id)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession, organization_id: str):
        if not organization_id:
            raise ValueError("organization_id is required")
        self.model = model
        self.db = db
        self.organization_id = organization_id

    @property
    def _soft_deletes(self) -> bool:
        return hasattr(self.model, "is_deleted")

    def _scoped(self, query: Select, include_deleted: bool = False) -> Select:
        """Restrict a query to this tenant (and to live rows)."""
        query = query.where(self.model.organization_id == self.organization_id)
        if self._soft_deletes and not include_deleted:
            query = query.where(self.model.is_deleted == False)  # noqa: E712
        return query

    # ─── Read ──────────────────────────────────────────────

    async def get_by_id(
        self,
        id: str,
        include_deleted: bool = False,
    ) -> Optional[ModelType]:
        """Get a single record by ID within this tenant."""
        query = self._scoped(select(self.model).where(self.model.id == id), include_deleted)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_404(self, id: str) -> ModelType:
        """Get a record or raise NotFoundError.

        Records belonging to other tenants are reported as not found.
        """
        instance = await self.get_by_id(id)
        if instance is None:
            raise NotFoundError(f"{self.model.__name__} {id} not found")
        return instance

    async def list(
        self,
        offset: int = 0,
        limit: int = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        include_deleted: bool = False,
        filters: dict[str, Any] = None,
    ) -> tuple[Sequence[ModelType], int]:
        """List records with pagination, filtering, and sorting.

        Returns:
            Tuple of (items, total_count)
        """
        query = self._scoped(select(self.model), include_deleted)
        count_query = self._scoped(select(func.count()).select_from(self.model), include_deleted)

        # Additional filters
        if filters:
            for field, value in filters.items():
                if field == "organization_id" or not hasattr(self.model, field):
                    continue
                col = getattr(self.model, field)
                if isinstance(value, list):
                    query = query.where(col.in_(value))
                    count_query = count_query.where(col.in_(value))
                else:
                    query = query.where(col == value)
                    count_query = count_query.where(col == value)

        # Sorting
        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())

        # Pagination
        query = query.offset(offset).limit(limit)

        result = await self.db.execute(query)
        items = result.scalars().all()

        count_result = await self.db.execute(count_query)
        total = count_result.scalar() or 0

        return items, total

    async def exists(self, id: str) -> bool:
        """Check if a live record exists in this tenant."""
        query = self._scoped(
            select(func.count()).select_from(self.model).where(self.model.id == id)
        )
        result = await self.db.execute(query)
        return (result.scalar() or 0) > 0

    # ─── Create ────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record owned by this tenant.

        Args:
            data: Dict of field values; any organization_id given is replaced

        Returns:
            Created model instance
        """
        data = dict(data)
        data.setdefault("id", str(uuid4()))
        data["organization_id"] = self.organization_id

        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Update ────────────────────────────────────────────

    async def update(self, id: str, data: dict[str, Any]) -> Optional[ModelType]:
        """Update a record by ID.

        Args:
            id: Record UUID
            data: Dict of fields to update (None values are skipped)

        Returns:
            Updated model instance or None if not found
        """
        instance = await self.get_by_id(id)
        if not instance:
            return None

        update_data = {
            k: v for k, v in data.items()
            if v is not None and k not in ("id", "organization_id")
        }
        for key, value in update_data.items():
            if hasattr(instance, key):
                setattr(instance, key, value)

        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Delete ────────────────────────────────────────────

    async def soft_delete(self, id: str) -> bool:
        """Soft-delete a record.

        Returns:
            True if deleted, False if not found
        """
        instance = await self.get_by_id(id)
        if not instance:
            return False
        if not self._soft_deletes:
            raise TypeError(f"{self.model.__name__} does not support soft delete")

        instance.soft_delete()
        await self.db.flush()
        return True

    async def restore(self, id: str) -> Optional[ModelType]:
        """Restore a soft-deleted record.

        Returns:
            Restored instance or None
        """
        instance = await self.get_by_id(id, include_deleted=True)
        if not instance or not self._soft_deletes or not instance.is_deleted:
            return None

        instance.restore()
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    async def hard_delete(self, id: str) -> bool:
        """Permanently delete a record.

        Returns:
            True if deleted, False if not found
        """
        instance = await self.get_by_id(id, include_deleted=True)
        if not instance:
            return False

        await self.db.delete(instance)
        await self.db.flush()
        return True
