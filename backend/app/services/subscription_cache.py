"""
Redis-backed read cache for subscription snapshots, keyed by tenant.

Shared across API instances, bounded by SUBSCRIPTION_CACHE_TTL_SECONDS and
invalidated after every committed write (see subscription_events.py).
Redis failures never fail a request: reads fall through to the database.
"""
from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.redis import get_redis_client
from app.schemas.billing import SubscriptionDetail
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

_KEY_PREFIX = "subscription:snapshot"
# Cached marker for tenants without a subscription row
_ABSENT = "__none__"


def snapshot_key(tenant_id: UUID) -> str:
    return f"{_KEY_PREFIX}:{tenant_id}"


class SubscriptionCache:
    """get-or-load / invalidate helpers around a JSON snapshot in Redis."""

    @staticmethod
    async def get_snapshot(db: AsyncSession, tenant_id: UUID) -> Optional[SubscriptionDetail]:
        """
        Cached subscription for ``tenant_id`` (None = no row), loading on miss.
        """
        key = snapshot_key(tenant_id)
        try:
            cached = await get_redis_client().get(key)
        except Exception:
            logger.warning("subscription_cache_read_failed: tenant=%s", tenant_id, exc_info=True)
            cached = None

        if cached is not None:
            if cached == _ABSENT:
                return None
            try:
                return SubscriptionDetail.model_validate_json(cached)
            except ValueError:
                logger.warning("subscription_cache_corrupt: tenant=%s", tenant_id)

        subscription = await SubscriptionStore.get_by_tenant(db, tenant_id)
        snapshot = SubscriptionDetail.model_validate(subscription) if subscription else None
        await SubscriptionCache.store(tenant_id, snapshot)
        return snapshot

    @staticmethod
    async def store(tenant_id: UUID, snapshot: Optional[SubscriptionDetail]) -> None:
        value = snapshot.model_dump_json() if snapshot is not None else _ABSENT
        try:
            await get_redis_client().setex(
                snapshot_key(tenant_id),
                settings.SUBSCRIPTION_CACHE_TTL_SECONDS,
                value,
            )
        except Exception:
            logger.warning("subscription_cache_write_failed: tenant=%s", tenant_id, exc_info=True)

    @staticmethod
    async def invalidate(tenant_id: UUID) -> None:
        try:
            await get_redis_client().delete(snapshot_key(tenant_id))
        except Exception:
            logger.warning("subscription_cache_invalidate_failed: tenant=%s", tenant_id, exc_info=True)
