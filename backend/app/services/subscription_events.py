"""
Subscription change feed — post-commit side effects and per-tenant pub/sub.

Write paths stage a ``SubscriptionChange`` on the session. ``commit`` persists
the transaction and only then, for each staged change: invalidates the cached
snapshot, publishes the new state on ``subscription:changes:{tenant_id}`` and
delivers the attached notifications. A rolled-back transaction drops its
staged changes, so nothing is announced for writes that did not happen.

Consumers waiting on a purchase subscribe with ``watch_until_settled`` and stop
as soon as an active or terminal state is published.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis import get_redis_client
from app.models.subscription import Subscription, SubscriptionStatus, TERMINAL_STATUSES
from app.services.notification_service import Notification, NotificationService
from app.services.subscription_cache import SubscriptionCache

logger = logging.getLogger(__name__)

_CHANNEL_PREFIX = "subscription:changes"
_STAGED_KEY = "subscription_changes"

SETTLED_STATUSES: frozenset[str] = frozenset({SubscriptionStatus.ACTIVE.value}) | TERMINAL_STATUSES


def channel_name(tenant_id: UUID) -> str:
    return f"{_CHANNEL_PREFIX}:{tenant_id}"


def is_settled(status: Optional[str]) -> bool:
    """Watchers stop once a subscription is active or terminal."""
    return status in SETTLED_STATUSES


@dataclass
class SubscriptionChange:
    tenant_id: UUID
    subscription_id: Optional[UUID]
    status: Optional[str]
    plan_type: Optional[str]
    reason: str
    notifications: list[Notification] = field(default_factory=list)

    @classmethod
    def from_subscription(
        cls,
        subscription: Subscription,
        reason: str,
        notifications: Optional[list[Optional[Notification]]] = None,
    ) -> "SubscriptionChange":
        return cls(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            status=subscription.status,
            plan_type=subscription.plan_type,
            reason=reason,
            notifications=[n for n in (notifications or []) if n is not None],
        )

    def as_message(self) -> dict[str, Any]:
        return {
            "type": "change",
            "tenant_id": str(self.tenant_id),
            "subscription_id": str(self.subscription_id) if self.subscription_id else None,
            "status": self.status,
            "plan_type": self.plan_type,
            "reason": self.reason,
            "at": datetime.utcnow().isoformat(),
        }


class SubscriptionChangeFeed:
    """Stage/commit/dispatch helpers plus the Redis pub/sub channel."""

    @staticmethod
    def stage(db: AsyncSession, change: SubscriptionChange) -> None:
        db.info.setdefault(_STAGED_KEY, []).append(change)

    @staticmethod
    def staged(db: AsyncSession) -> list[SubscriptionChange]:
        return list(db.info.get(_STAGED_KEY, []))

    @staticmethod
    async def commit(db: AsyncSession) -> None:
        """Commit the session, then dispatch everything staged on it."""
        try:
            await db.commit()
        except Exception:
            db.info.pop(_STAGED_KEY, None)
            raise
        await SubscriptionChangeFeed.dispatch(db)

    @staticmethod
    async def dispatch(db: AsyncSession) -> None:
        changes: list[SubscriptionChange] = db.info.pop(_STAGED_KEY, [])
        for change in changes:
            await SubscriptionCache.invalidate(change.tenant_id)
            await SubscriptionChangeFeed.publish(change)
            for notification in change.notifications:
                NotificationService.deliver(notification)

    @staticmethod
    async def publish(change: SubscriptionChange) -> None:
        try:
            await get_redis_client().publish(
                channel_name(change.tenant_id),
                json.dumps(change.as_message()),
            )
        except Exception:
            logger.warning(
                "subscription_change_publish_failed: tenant=%s status=%s",
                change.tenant_id, change.status, exc_info=True,
            )

    @staticmethod
    async def listen(
        tenant_id: UUID,
        on_subscribed: Optional[Callable[[], Awaitable[Optional[dict[str, Any]]]]] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield every change published for ``tenant_id`` until the caller stops.

        ``on_subscribed`` runs once the channel is subscribed; a message it
        returns is yielded first. Reading the current state there means no
        change published in between can be missed.
        """
        pubsub = get_redis_client().pubsub()
        channel = channel_name(tenant_id)
        await pubsub.subscribe(channel)
        try:
            if on_subscribed is not None:
                initial = await on_subscribed()
                if initial is not None:
                    yield initial
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("subscription_change_malformed: channel=%s", channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    @staticmethod
    async def watch_until_settled(
        tenant_id: UUID,
        on_subscribed: Optional[Callable[[], Awaitable[Optional[dict[str, Any]]]]] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Like ``listen`` but unsubscribes after the first active/terminal state."""
        stream = SubscriptionChangeFeed.listen(tenant_id, on_subscribed)
        try:
            async for change in stream:
                yield change
                if is_settled(change.get("status")):
                    return
        finally:
            await stream.aclose()
