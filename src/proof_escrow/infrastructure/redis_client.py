"""Redis client and per-deal settlement locks.

When Redis is reachable, settlement locks are Redis locks so several
workers share them. Without Redis (local development, tests) a
process-local asyncio.Lock per key is used; the partial unique indexes on
payouts/refunds still hold across processes either way.

Usage:
    from proof_escrow.infrastructure.redis_client import deal_lock

    async with deal_lock(f"payout:{deal_id}"):
        ...
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import LockError

from proof_escrow.config import get_settings
from proof_escrow.domain.exceptions import SettlementInProgressError
from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_local_locks: dict[str, asyncio.Lock] = {}
# Holders plus waiters per key; an entry is dropped when it reaches zero
_local_users: dict[str, int] = {}


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def redis_available() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


@asynccontextmanager
async def deal_lock(key: str) -> AsyncIterator[None]:
    """Hold an exclusive lock for ``key`` for the duration of the block.

    Raises:
        SettlementInProgressError: The Redis lock could not be acquired
            within ``redis_lock_blocking_seconds``.
    """
    if _redis_client is not None:
        settings = get_settings()
        lock = _redis_client.lock(
            f"lock:{key}",
            timeout=settings.redis_lock_timeout_seconds,
            blocking_timeout=settings.redis_lock_blocking_seconds,
        )
        if not await lock.acquire():
            logger.warning("redis.lock_busy", key=key)
            raise SettlementInProgressError(key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Held past its timeout; another worker may already own it
                logger.warning("redis.lock_expired", key=key)
        return

    local = _local_locks.setdefault(key, asyncio.Lock())
    _local_users[key] = _local_users.get(key, 0) + 1
    try:
        async with local:
            yield
    finally:
        _local_users[key] -= 1
        if not _local_users[key]:
            del _local_users[key]
            del _local_locks[key]
