from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from convoflow.service.errors import LockBusyError, LockLostError
from convoflow.service.locking import ExecutionLock, conversation_resource
from convoflow.storage.memory import MemoryCache
from convoflow.storage.redis_cache import lock_key


def test_conversation_resource_naming():
    assert conversation_resource("c1") == "workflow:exec:c1"
    assert lock_key(conversation_resource("c1")) == "lock:workflow:exec:c1"


@pytest.mark.asyncio
async def test_acquire_is_exclusive_until_released():
    cache = MemoryCache()
    first = ExecutionLock(cache)
    second = ExecutionLock(cache)

    assert await first.acquire("r") is True
    assert await second.acquire("r") is False
    assert await second.release("r") is False
    assert await first.release("r") is True
    assert await second.acquire("r") is True


@pytest.mark.asyncio
async def test_release_with_a_stale_token_leaves_the_new_holder_alone():
    cache = MemoryCache()
    lock = ExecutionLock(cache)
    assert await cache.acquire_lock("r", "old-token", 30)
    await cache.release_lock("r", "old-token")
    assert await cache.acquire_lock("r", "new-token", 30)

    assert await cache.release_lock("r", "old-token") is False
    assert await cache.lock_holder("r") == "new-token"
    assert await lock.extend_token("r", "old-token") is False


@pytest.mark.asyncio
async def test_with_lock_raises_busy_after_retries():
    cache = MemoryCache()
    lock = ExecutionLock(cache, retries=3, wait_ms=1)
    await cache.acquire_lock("r", "someone-else", 30)

    with pytest.raises(LockBusyError) as excinfo:
        async with lock.with_lock("r"):
            pass

    assert excinfo.value.attempts == 3
    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 409


@pytest.mark.asyncio
async def test_with_lock_releases_on_error_and_supports_extension():
    cache = MemoryCache()
    lock = ExecutionLock(cache, ttl_seconds=5)

    with pytest.raises(RuntimeError):
        async with lock.with_lock("r") as token:
            assert await cache.lock_holder("r") == token
            assert await lock.extend_token("r", token, 60) is True
            assert cache.ttl("lock:r") > 5
            raise RuntimeError("boom")

    assert await cache.lock_holder("r") is None


@pytest.mark.asyncio
async def test_with_lock_serializes_contenders():
    cache = MemoryCache()
    lock = ExecutionLock(cache, retries=200, wait_ms=1)
    inside = []
    overlaps = []

    async def _worker(name):
        async with lock.with_lock("r"):
            if inside:
                overlaps.append(name)
            inside.append(name)
            await asyncio.sleep(0.01)
            inside.remove(name)

    await asyncio.gather(*[_worker(f"w{i}") for i in range(4)])

    assert overlaps == []
    assert await cache.lock_holder("r") is None


class _BrokenCache(MemoryCache):
    async def acquire_lock(self, resource, token, ttl_seconds):
        raise RedisConnectionError("redis unreachable")


@pytest.mark.asyncio
async def test_unreachable_store_never_grants_the_lock():
    lock = ExecutionLock(_BrokenCache(), retries=2, wait_ms=1)

    assert await lock.acquire("r") is False
    with pytest.raises(LockBusyError):
        async with lock.with_lock("r"):
            pass


@pytest.mark.asyncio
async def test_run_while_held_refreshes_the_lock_for_slow_work():
    cache = MemoryCache()
    lock = ExecutionLock(cache, ttl_seconds=1)

    async def _work():
        await asyncio.sleep(1.5)
        return "done"

    async with lock.with_lock("r") as token:
        assert await lock.run_while_held("r", token, _work()) == "done"
        assert await cache.lock_holder("r") == token


@pytest.mark.asyncio
async def test_run_while_held_cancels_work_once_the_lock_is_gone():
    cache = MemoryCache()
    lock = ExecutionLock(cache, ttl_seconds=1)
    finished = []

    async def _work():
        await asyncio.sleep(2)
        finished.append(True)

    await cache.acquire_lock("r", "other-owner", 30)

    with pytest.raises(LockLostError):
        await lock.run_while_held("r", "stale-token", _work())
    assert finished == []
    assert await cache.lock_holder("r") == "other-owner"
