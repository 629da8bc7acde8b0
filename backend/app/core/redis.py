"""
Shared async Redis client.

Backs the subscription snapshot cache and the ``subscription:changes:*``
pub/sub channels. Callers treat Redis as optional: a failed command is logged
and the request continues against the database.
"""
from __future__ import annotations

import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[Redis] = None


def get_redis_client() -> Redis:
    """
    Get or initialize a singleton async Redis client.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


async def ping_redis() -> bool:
    """True when Redis answers PING (health check only)."""
    try:
        return bool(await get_redis_client().ping())
    except (RedisError, OSError) as exc:
        logger.warning("redis_ping_failed: %s", exc)
        return False


async def close_redis_client() -> None:
    """
    Close Redis client during application shutdown.
    """
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
