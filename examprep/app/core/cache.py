"""Cache abstraction layer shared by every examprep instance.

Provides a pluggable cache backend with in-memory and Redis implementations.
Besides plain get/set, backends expose the atomic primitives the session
creation coordinator relies on: set-if-absent and compare-and-delete.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatchcase
import asyncio
import time
from typing import Any

import redis.asyncio as aioredis


# KEYS[1] = lock key, ARGV[1] = expected holder token
COMPARE_AND_DELETE_SCRIPT = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
"""


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return time.time() > self.expires_at


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    All cache implementations must inherit from this class and implement
    the abstract methods.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve a value from the cache.

        Returns:
            The cached value as bytes, or None if not found or expired.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> None:
        """Store a value in the cache, overwriting any existing entry."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: bytes, ttl: int) -> bool:
        """Atomically store a value only if the key is absent or expired.

        Returns:
            True if the value was stored, False if the key already existed.
        """

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        """Atomically delete a key only if its value equals ``expected``.

        Returns:
            True if the key was deleted.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a value from the cache."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob-style pattern.

        Returns:
            Number of keys removed.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists in the cache and is not expired."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from the cache."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCache(CacheBackend):
    """In-memory cache implementation with TTL support.

    Suitable for tests and single-instance runs. Every operation holds one
    asyncio lock, which makes set_if_absent and compare_and_delete atomic
    within the process.

    Note: This cache is not distributed and data is lost when the
    application restarts.
    """

    def __init__(self) -> None:
        self._data: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        async with self._lock:
            expires_at = time.time() + ttl if ttl > 0 else None
            self._data[key] = _CacheEntry(value=value, expires_at=expires_at)

    async def set_if_absent(self, key: str, value: bytes, ttl: int) -> bool:
        async with self._lock:
            if self._live_entry(key) is not None:
                return False
            expires_at = time.time() + ttl if ttl > 0 else None
            self._data[key] = _CacheEntry(value=value, expires_at=expires_at)
            return True

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.value != expected:
                return False
            del self._data[key]
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            matched = [key for key in self._data if fnmatchcase(key, pattern)]
            for key in matched:
                del self._data[key]
            return len(matched)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()


class RedisCache(CacheBackend):
    """Redis-based cache implementation.

    set_if_absent maps to ``SET key value NX EX ttl`` and compare_and_delete
    runs a Lua script, so both are single atomic server-side operations.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=300)
    """

    def __init__(
        self,
        redis_url: str,
        socket_timeout: float | None = None,
        client: Any | None = None,
    ) -> None:
        """Initialize the Redis cache.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            socket_timeout: Per-call socket timeout in seconds
            client: Pre-built client, mainly for tests
        """
        self._redis_url = redis_url
        self._socket_timeout = socket_timeout
        self._redis: Any | None = client

    async def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._redis

    async def get(self, key: str) -> bytes | None:
        client = await self._get_client()
        return await client.get(key)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        client = await self._get_client()
        await client.setex(key, ttl, value)

    async def set_if_absent(self, key: str, value: bytes, ttl: int) -> bool:
        client = await self._get_client()
        # SET NX returns None when the key already exists
        return bool(await client.set(key, value, ex=ttl, nx=True))

    async def compare_and_delete(self, key: str, expected: bytes) -> bool:
        client = await self._get_client()
        deleted = await client.eval(COMPARE_AND_DELETE_SCRIPT, 1, key, expected)
        return int(deleted) == 1

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        await client.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=pattern)]
        if not keys:
            return 0
        return int(await client.delete(*keys))

    async def exists(self, key: str) -> bool:
        client = await self._get_client()
        return await client.exists(key) > 0

    async def clear(self) -> None:
        """Clear all entries from the cache.

        WARNING: This uses FLUSHDB which clears the entire Redis database.
        """
        client = await self._get_client()
        await client.flushdb()

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Global cache instance (default wiring only; services accept a backend)
_cache_instance: CacheBackend | None = None


def get_cache(
    backend: str | None = None,
    redis_url: str | None = None,
    force_new: bool = False,
) -> CacheBackend:
    """Get or create the global cache instance.

    Args:
        backend: 'memory', 'redis', or None to follow settings.redis_enabled.
        redis_url: Redis connection URL. Defaults to settings.redis_url.
        force_new: If True, create a new instance even if one exists.
    """
    global _cache_instance

    if _cache_instance is not None and not force_new:
        return _cache_instance

    from examprep.app.core.config import settings

    if backend is None:
        use_redis = settings.redis_enabled
    else:
        use_redis = backend == "redis"

    if use_redis:
        _cache_instance = RedisCache(
            redis_url or settings.redis_url,
            socket_timeout=settings.cache_timeout_seconds,
        )
    else:
        _cache_instance = InMemoryCache()
    return _cache_instance


def reset_cache() -> None:
    """Reset the global cache instance.

    This is primarily useful for testing.
    """
    global _cache_instance
    _cache_instance = None
