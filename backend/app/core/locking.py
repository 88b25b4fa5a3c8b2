"""In-flight webhook event lock backed by Redis.

Two deliveries of the same Stripe event can overlap when Stripe retries while
the first attempt is still running. The ledger's processed flag only closes
that window once the first attempt commits, so the webhook route holds a
short-lived Redis lock per event ID while it reconciles.

The lock is advisory: when Redis is not configured the route runs without it
and relies on keyed upserts plus the ledger.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class EventLock:
    """Manages per-event processing locks using Redis SET NX + TTL."""

    LOCK_PREFIX = "jds:webhook:lock:"
    DEFAULT_TTL = 120

    def __init__(self, redis_client: redis.Redis, ttl: int | None = None):
        self._redis = redis_client
        self._ttl = ttl or self.DEFAULT_TTL

    def _lock_key(self, event_id: str) -> str:
        return f"{self.LOCK_PREFIX}{event_id}"

    async def acquire(self, event_id: str, owner: str) -> bool:
        """Attempt to take the lock for an event.

        Returns:
            True if acquired (or already held by this owner), False if another
            delivery holds it.
        """
        key = self._lock_key(event_id)
        lock_value = f"{owner}:{datetime.now(UTC).isoformat()}"
        if await self._redis.set(key, lock_value, nx=True, ex=self._ttl):
            return True

        current = await self._redis.get(key)
        if current and current.startswith(f"{owner}:"):
            await self._redis.expire(key, self._ttl)
            return True

        return False

    async def release(self, event_id: str, owner: str) -> bool:
        """Release the lock if this owner holds it."""
        key = self._lock_key(event_id)
        current = await self._redis.get(key)
        if current and current.startswith(f"{owner}:"):
            await self._redis.delete(key)
            return True
        return False

    async def is_locked(self, event_id: str) -> bool:
        return await self._redis.exists(self._lock_key(event_id)) > 0

    @asynccontextmanager
    async def hold(self, event_id: str, owner: str) -> AsyncGenerator[bool, None]:
        """Context manager yielding whether the lock was acquired.

        Redis failures are logged and treated as acquired so a Redis outage
        degrades to ledger-only protection instead of rejecting deliveries.
        """
        try:
            acquired = await self.acquire(event_id, owner)
        except redis.RedisError as e:
            logger.warning("event_lock_unavailable", event_id=event_id, error=str(e))
            yield True
            return

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.release(event_id, owner)
                except redis.RedisError as e:
                    logger.warning("event_lock_release_failed", event_id=event_id, error=str(e))
