"""
config/redis_client.py
Async Redis client for shard snapshot caching and the admission /
reconciliation locks.
"""

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as aioredis
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=0.5, max=8), reraise=True)
async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Key names ─────────────────────────────────────────────────
RECONCILE_LOCK = "ledger:lock:reconcile"


def snapshot_key(shard: str) -> str:
    return f"ledger:snapshot:{shard}"


def shard_lock_key(shard: str) -> str:
    return f"ledger:lock:shard:{shard}"


class LockNotAcquired(Exception):
    """Raised by RedisCache.hold() when the lock stays taken past the wait."""

    def __init__(self, key: str):
        super().__init__(f"Lock {key} is held by another worker")
        self.key = key


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching and locking patterns."""

    poll_interval = 0.05

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    # ── Locks ────────────────────────────────────────────────
    async def acquire_lock(self, key: str, token: str, ttl: int) -> bool:
        """
        Atomic lock using SET NX (set if not exists) with an owner token.
        Returns True if lock acquired, False if already held.
        """
        result = await self.client.set(key, token, ex=ttl, nx=True)
        return result is True

    async def release_lock(self, key: str, token: str) -> None:
        """Release only if we still own it (the TTL may have handed it on)."""
        if await self.client.get(key) == token:
            await self.client.delete(key)

    async def is_locked(self, key: str) -> bool:
        return await self.client.exists(key) == 1

    async def wait_until_free(self, key: str, timeout: float) -> bool:
        """Poll until key is released. Returns False if still held at timeout."""
        deadline = time.monotonic() + timeout
        while await self.is_locked(key):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.poll_interval)
        return True

    @asynccontextmanager
    async def hold(self, key: str, ttl: int, wait: float = 0.0) -> AsyncIterator[str]:
        """
        Hold a lock for the duration of the block, waiting up to `wait`
        seconds to acquire it. Raises LockNotAcquired otherwise.
        """
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait
        while not await self.acquire_lock(key, token, ttl):
            if time.monotonic() >= deadline:
                raise LockNotAcquired(key)
            await asyncio.sleep(self.poll_interval)
        try:
            yield token
        finally:
            await self.release_lock(key, token)
