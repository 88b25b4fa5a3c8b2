"""Tests for the Redis in-flight event lock."""

from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
import redis.asyncio as redis

from app.core.locking import EventLock

pytestmark = pytest.mark.unit


@pytest.fixture
def fake_redis():
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def lock(fake_redis) -> EventLock:
    return EventLock(fake_redis, ttl=60)


async def test_acquire_then_conflict(lock):
    assert await lock.acquire("evt_1", "worker-a") is True
    assert await lock.acquire("evt_1", "worker-b") is False
    assert await lock.is_locked("evt_1") is True


async def test_acquire_is_reentrant_for_owner(lock):
    assert await lock.acquire("evt_1", "worker-a") is True
    assert await lock.acquire("evt_1", "worker-a") is True


async def test_lock_has_ttl(lock, fake_redis):
    await lock.acquire("evt_1", "worker-a")
    ttl = await fake_redis.ttl("jds:webhook:lock:evt_1")
    assert 0 < ttl <= 60


async def test_release_only_by_owner(lock):
    await lock.acquire("evt_1", "worker-a")
    assert await lock.release("evt_1", "worker-b") is False
    assert await lock.is_locked("evt_1") is True
    assert await lock.release("evt_1", "worker-a") is True
    assert await lock.is_locked("evt_1") is False


async def test_events_lock_independently(lock):
    assert await lock.acquire("evt_1", "worker-a") is True
    assert await lock.acquire("evt_2", "worker-b") is True


async def test_hold_releases_on_exit(lock):
    async with lock.hold("evt_1", "worker-a") as acquired:
        assert acquired is True
        assert await lock.is_locked("evt_1") is True
    assert await lock.is_locked("evt_1") is False


async def test_hold_reports_contention_and_keeps_other_lock(lock):
    await lock.acquire("evt_1", "worker-a")
    async with lock.hold("evt_1", "worker-b") as acquired:
        assert acquired is False
    assert await lock.is_locked("evt_1") is True


async def test_hold_degrades_when_redis_unavailable():
    """A Redis outage must not block webhook processing."""
    broken = AsyncMock()
    broken.set.side_effect = redis.ConnectionError("connection refused")
    lock = EventLock(broken)

    async with lock.hold("evt_1", "worker-a") as acquired:
        assert acquired is True
