"""
Pytest fixtures for the billing backend tests.

Every test gets its own SQLite file (aiosqlite for the app, pysqlite for the
Celery tasks), an in-memory Redis stand-in and a recorder in place of the
Celery email queue.
"""
from __future__ import annotations

import asyncio
import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./queueflow-test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "redis://localhost:6379/14")
os.environ.setdefault("CELERY_RESULT_BACKEND", "redis://localhost:6379/14")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_queueflow")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_queueflow")
os.environ.setdefault("STRIPE_PRICE_ID_STARTER", "price_starter")
os.environ.setdefault("STRIPE_PRICE_ID_PROFESSIONAL", "price_professional")
os.environ.setdefault("STRIPE_PRICE_ID_ENTERPRISE", "")
os.environ.setdefault("SUPER_ADMIN_EMAIL", "ops@queueflow.test")

from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from contextlib import contextmanager
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401
from app.api.v1.endpoints import billing as billing_endpoints
from app.core import database_sync
from app.core import redis as redis_module
from app.core.database import Base, get_db
from app.core.rbac import UserRole
from app.core.security import create_access_token
from app.main import app
from app.models.subscription import Subscription
from app.models.user import User
from app.services import subscription_cache, subscription_events
from app.services.notification_service import Notification, NotificationService


class FakePubSub:
    """
    Minimal async PubSub stub; messages arrive through an asyncio.Queue.
    """

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.channels.add(channel)
        self._redis.subscribers[channel].append(self)

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)
        if self in self._redis.subscribers[channel]:
            self._redis.subscribers[channel].remove(self)

    async def aclose(self) -> None:
        self.closed = True

    def deliver(self, channel: str, data: str) -> None:
        message = {"type": "message", "channel": channel, "data": data}
        # Publishers may run on another thread/loop (TestClient websockets)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, message)

    async def listen(self):
        yield {"type": "subscribe", "channel": next(iter(self.channels), None), "data": 1}
        while True:
            yield await self._queue.get()


class FakeRedis:
    """
    Minimal async Redis stub for the snapshot cache and the change channel.
    """

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.subscribers: dict[str, list[FakePubSub]] = defaultdict(list)

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        listeners = list(self.subscribers[channel])
        for pubsub in listeners:
            pubsub.deliver(channel, data)
        return len(listeners)

    async def ping(self) -> bool:
        return True

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)


class BrokenRedis(FakeRedis):
    """Every command fails, like a Redis outage."""

    async def ping(self) -> bool:
        raise ConnectionError("redis down")

    async def get(self, key: str) -> Optional[str]:
        raise ConnectionError("redis down")

    async def setex(self, key: str, ttl: int, value: str) -> None:
        raise ConnectionError("redis down")

    async def delete(self, key: str) -> int:
        raise ConnectionError("redis down")

    async def publish(self, channel: str, data: str) -> int:
        raise ConnectionError("redis down")


# ---------------------------------------------------------------------------
# Redis / notifications
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    """Route cache and change-feed Redis calls to an in-memory stub."""
    redis = FakeRedis()
    monkeypatch.setattr(subscription_cache, "get_redis_client", lambda: redis)
    monkeypatch.setattr(redis_module, "get_redis_client", lambda: redis)
    monkeypatch.setattr(subscription_events, "get_redis_client", lambda: redis)
    return redis


@pytest.fixture
def broken_redis(monkeypatch: pytest.MonkeyPatch) -> BrokenRedis:
    redis = BrokenRedis()
    monkeypatch.setattr(subscription_cache, "get_redis_client", lambda: redis)
    monkeypatch.setattr(redis_module, "get_redis_client", lambda: redis)
    monkeypatch.setattr(subscription_events, "get_redis_client", lambda: redis)
    return redis


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch: pytest.MonkeyPatch) -> list[Notification]:
    """Record notifications instead of enqueueing Celery email tasks."""
    sent: list[Notification] = []

    def _record(notification: Notification) -> None:
        sent.append(notification)

    monkeypatch.setattr(NotificationService, "_enqueue", staticmethod(_record))
    return sent


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def database_path(tmp_path) -> str:
    return str(tmp_path / "queueflow.db")


@pytest_asyncio.fixture
async def engine(database_path: str):
    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        poolclass=NullPool,
    )
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_engine
    await async_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session_factory: async_sessionmaker) -> Callable[..., Any]:
    """Factory: persist a User and return it (detached, attributes loaded)."""

    async def _make(
        email: Optional[str] = None,
        *,
        role: str = UserRole.ADMIN.value,
        tenant: Optional[User] = None,
        full_name: Optional[str] = "Tenant Owner",
        business_name: Optional[str] = "Barbearia Central",
        is_active: bool = True,
    ) -> User:
        user = User(
            id=uuid4(),
            email=email or f"user-{uuid4().hex[:8]}@example.com",
            full_name=full_name,
            business_name=business_name,
            role=role,
            tenant_id=tenant.id if tenant is not None else None,
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _make


@pytest.fixture
def make_subscription(session_factory: async_sessionmaker) -> Callable[..., Any]:
    """Factory: persist a Subscription row for ``tenant`` with explicit fields."""

    async def _make(tenant: User, **fields: Any) -> Subscription:
        values: dict[str, Any] = {"plan_type": "trial", "status": "trial"}
        values.update(fields)
        subscription = Subscription(id=uuid4(), tenant_id=tenant.id, **values)
        async with session_factory() as session:
            session.add(subscription)
            await session.commit()
        return subscription

    return _make


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker,
    monkeypatch: pytest.MonkeyPatch,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client with the request session bound to the test database.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(billing_endpoints, "AsyncSessionLocal", session_factory)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as async_client:
        yield async_client

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Sync database (Celery tasks, websocket tests)
# ---------------------------------------------------------------------------

@pytest.fixture
def sync_engine(database_path: str):
    engine_sync = create_engine(f"sqlite:///{database_path}", poolclass=NullPool)
    Base.metadata.create_all(engine_sync)
    yield engine_sync
    engine_sync.dispose()


@pytest.fixture
def sync_session_factory(sync_engine, monkeypatch: pytest.MonkeyPatch) -> sessionmaker:
    """Point ``get_sync_db`` (used by the Celery tasks) at the test database."""
    factory = sessionmaker(bind=sync_engine, expire_on_commit=False, autoflush=False)

    @contextmanager
    def _get_sync_db():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    monkeypatch.setattr(database_sync, "get_sync_db", _get_sync_db)
    return factory
