"""
Usage counter — live resource counts per tenant, read straight from the store.
"""
from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.resource import Customer, Product, Worker
from app.services.plan_catalog import ResourceKind

_RESOURCE_MODELS = {
    ResourceKind.CUSTOMERS: Customer,
    ResourceKind.WORKERS: Worker,
    ResourceKind.PRODUCTS: Product,
}


class UsageCounterService:
    """Stateless counting helpers; never cached, never mutate."""

    @staticmethod
    async def count(db: AsyncSession, tenant_id: UUID, resource: ResourceKind) -> int:
        model = _RESOURCE_MODELS[resource]
        stmt = select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
        return int((await db.execute(stmt)).scalar_one())

    @staticmethod
    async def get_usage_counts(db: AsyncSession, tenant_id: UUID) -> dict[str, int]:
        """Counts for every quota-bearing resource, keyed by ``ResourceKind`` value."""
        counts: dict[str, int] = {}
        for resource in _RESOURCE_MODELS:
            counts[resource.value] = await UsageCounterService.count(db, tenant_id, resource)
        return counts
