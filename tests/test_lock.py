"""Tests for the distributed per-user lock."""

import time
from unittest.mock import AsyncMock

import pytest

from examprep.app.core.cache import InMemoryCache
from examprep.app.services.lock import DistributedLock


@pytest.mark.asyncio
async def test_acquire_and_release():
    cache = InMemoryCache()
    lock = DistributedLock(cache, default_ttl=30)

    token = await lock.acquire("session-creation-lock:u1")

    assert token is not None
    assert await cache.get("session-creation-lock:u1") == token.encode()
    assert await lock.release("session-creation-lock:u1", token) is True
    assert await cache.exists("session-creation-lock:u1") is False


@pytest.mark.asyncio
async def test_busy_lock_fails_fast():
    lock = DistributedLock(InMemoryCache(), default_ttl=30)

    first = await lock.acquire("k")
    second = await lock.acquire("k")

    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_tokens_are_unique():
    lock = DistributedLock(InMemoryCache(), default_ttl=30)
    first = await lock.acquire("a")
    second = await lock.acquire("b")
    assert first != second


@pytest.mark.asyncio
async def test_release_with_wrong_token_keeps_lock():
    cache = InMemoryCache()
    lock = DistributedLock(cache, default_ttl=30)
    token = await lock.acquire("k")

    assert await lock.release("k", "not-the-holder") is False
    assert await cache.get("k") == token.encode()


@pytest.mark.asyncio
async def test_expired_holder_cannot_release_new_holder():
    cache = InMemoryCache()
    lock = DistributedLock(cache, default_ttl=30)
    stale = await lock.acquire("k")
    cache._data["k"].expires_at = time.time() - 1

    fresh = await lock.acquire("k")

    assert fresh is not None
    assert await lock.release("k", stale) is False
    assert await cache.get("k") == fresh.encode()


@pytest.mark.asyncio
async def test_acquire_uses_ttl():
    cache = InMemoryCache()
    cache.set_if_absent = AsyncMock(return_value=True)
    lock = DistributedLock(cache, default_ttl=30)

    token = await lock.acquire("k")
    await lock.acquire("k", ttl=5)

    assert cache.set_if_absent.await_args_list[0].args == ("k", token.encode(), 30)
    assert cache.set_if_absent.await_args_list[1].args[2] == 5


@pytest.mark.asyncio
async def test_cache_failure_reported_as_busy():
    cache = InMemoryCache()
    cache.set_if_absent = AsyncMock(side_effect=ConnectionError("redis down"))
    lock = DistributedLock(cache, default_ttl=30)

    assert await lock.acquire("k") is None


@pytest.mark.asyncio
async def test_release_failure_returns_false():
    cache = InMemoryCache()
    cache.compare_and_delete = AsyncMock(side_effect=TimeoutError())
    lock = DistributedLock(cache, default_ttl=30)

    assert await lock.release("k", "token") is False
