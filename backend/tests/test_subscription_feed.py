"""
Snapshot cache and change feed tests — post-commit dispatch, Redis outages
and the settle-and-stop watcher.
"""
from __future__ import annotations

import asyncio
import json
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.services.notification_service import Notification, NotificationKind
from app.services.subscription_cache import SubscriptionCache, snapshot_key
from app.services.subscription_events import (
    SubscriptionChange,
    SubscriptionChangeFeed,
    channel_name,
    is_settled,
)
from app.services.subscription_store import SubscriptionStore


def _change(tenant_id, status: str, **kwargs) -> SubscriptionChange:
    return SubscriptionChange(
        tenant_id=tenant_id,
        subscription_id=uuid4(),
        status=status,
        plan_type="professional",
        reason="test",
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Snapshot cache
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_snapshot_is_cached_with_ttl(db, make_user, make_subscription, fake_redis) -> None:
    tenant = await make_user()
    row = await make_subscription(tenant, status="trial")

    first = await SubscriptionCache.get_snapshot(db, tenant.id)

    key = snapshot_key(tenant.id)
    assert first.id == row.id
    assert fake_redis.ttls[key] == settings.SUBSCRIPTION_CACHE_TTL_SECONDS
    assert json.loads(fake_redis.store[key])["status"] == "trial"


@pytest.mark.asyncio
async def test_cached_snapshot_is_served_without_database(db, make_user, make_subscription, monkeypatch) -> None:
    tenant = await make_user()
    await make_subscription(tenant)
    await SubscriptionCache.get_snapshot(db, tenant.id)

    async def _fail(*_args, **_kwargs):
        raise AssertionError("database read on a cache hit")

    monkeypatch.setattr(SubscriptionStore, "get_by_tenant", _fail)

    snapshot = await SubscriptionCache.get_snapshot(db, tenant.id)
    assert snapshot.tenant_id == tenant.id


@pytest.mark.asyncio
async def test_absent_row_is_cached_as_marker(db, make_user, fake_redis) -> None:
    tenant = await make_user()

    assert await SubscriptionCache.get_snapshot(db, tenant.id) is None
    assert fake_redis.store[snapshot_key(tenant.id)] == "__none__"
    assert await SubscriptionCache.get_snapshot(db, tenant.id) is None


@pytest.mark.asyncio
async def test_redis_outage_falls_through_to_database(db, make_user, make_subscription, broken_redis) -> None:
    tenant = await make_user()
    row = await make_subscription(tenant, status="trial")

    snapshot = await SubscriptionCache.get_snapshot(db, tenant.id)
    await SubscriptionCache.invalidate(tenant.id)

    assert snapshot.id == row.id


# ---------------------------------------------------------------------------
# Post-commit dispatch
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_commit_invalidates_publishes_and_notifies(db, fake_redis, sent_notifications) -> None:
    tenant_id = uuid4()
    fake_redis.store[snapshot_key(tenant_id)] = "__none__"
    notification = Notification(kind=NotificationKind.STATUS_CHANGE, to_email="t@example.com")
    SubscriptionChangeFeed.stage(db, _change(tenant_id, "active", notifications=[notification]))

    assert fake_redis.published == []
    await SubscriptionChangeFeed.commit(db)

    assert snapshot_key(tenant_id) not in fake_redis.store
    [(channel, data)] = fake_redis.published
    assert channel == channel_name(tenant_id)
    message = json.loads(data)
    assert message["type"] == "change"
    assert message["status"] == "active"
    assert sent_notifications == [notification]
    assert SubscriptionChangeFeed.staged(db) == []


@pytest.mark.asyncio
async def test_failed_commit_drops_staged_changes(db, fake_redis, sent_notifications, monkeypatch) -> None:
    SubscriptionChangeFeed.stage(db, _change(uuid4(), "active"))

    async def _boom(_self) -> None:
        raise RuntimeError("commit failed")

    monkeypatch.setattr(AsyncSession, "commit", _boom)

    with pytest.raises(RuntimeError):
        await SubscriptionChangeFeed.commit(db)

    assert SubscriptionChangeFeed.staged(db) == []
    assert fake_redis.published == []
    assert sent_notifications == []


@pytest.mark.asyncio
async def test_publish_failure_does_not_raise(db, broken_redis, sent_notifications) -> None:
    notification = Notification(kind=NotificationKind.STATUS_CHANGE, to_email="t@example.com")
    SubscriptionChangeFeed.stage(db, _change(uuid4(), "active", notifications=[notification]))

    await SubscriptionChangeFeed.commit(db)

    assert sent_notifications == [notification]


def test_notification_failure_is_swallowed(monkeypatch) -> None:
    from app.services.notification_service import NotificationError, NotificationService

    def _explode(_notification) -> None:
        raise NotificationError("broker down")

    monkeypatch.setattr(NotificationService, "_enqueue", staticmethod(_explode))

    delivered = NotificationService.deliver(
        Notification(kind=NotificationKind.TRIAL_EXPIRING, to_email="t@example.com")
    )
    assert delivered is False


# ---------------------------------------------------------------------------
# Watchers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    ("status", "settled"),
    [
        ("active", True),
        ("canceled", True),
        ("expired", True),
        ("pending", False),
        ("past_due", False),
        ("trial", False),
        (None, False),
    ],
)
def test_is_settled(status, settled: bool) -> None:
    assert is_settled(status) is settled


@pytest.mark.asyncio
async def test_watch_stops_after_settled_state(fake_redis) -> None:
    tenant_id = uuid4()
    received: list[dict] = []

    async def initial():
        return {"type": "snapshot", "status": "pending"}

    async def consume() -> None:
        async for message in SubscriptionChangeFeed.watch_until_settled(tenant_id, initial):
            received.append(message)

    task = asyncio.create_task(consume())
    while not fake_redis.subscribers[channel_name(tenant_id)]:
        await asyncio.sleep(0)

    await SubscriptionChangeFeed.publish(_change(tenant_id, "past_due"))
    await SubscriptionChangeFeed.publish(_change(tenant_id, "active"))
    await SubscriptionChangeFeed.publish(_change(tenant_id, "canceled"))
    await asyncio.wait_for(task, timeout=2)

    assert [m["status"] for m in received] == ["pending", "past_due", "active"]
    assert fake_redis.subscribers[channel_name(tenant_id)] == []


@pytest.mark.asyncio
async def test_watch_ends_immediately_when_already_settled(fake_redis) -> None:
    tenant_id = uuid4()

    async def initial():
        return {"type": "snapshot", "status": "active"}

    messages = [m async for m in SubscriptionChangeFeed.watch_until_settled(tenant_id, initial)]

    assert messages == [{"type": "snapshot", "status": "active"}]
    assert fake_redis.subscribers[channel_name(tenant_id)] == []
