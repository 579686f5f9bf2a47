"""Distributed per-user lock on top of the shared cache.

Acquire is a single set-if-absent with a TTL and never waits: a held lock
means busy. Release is compare-and-delete against the holder token, so a
holder whose lock expired (and was taken by someone else) cannot free the
new holder's lock. TTL expiry is the only recovery path for a crashed
holder; there is no forced unlock.
"""

import uuid
from typing import Optional

from examprep.app.core.cache import CacheBackend, get_cache
from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger

logger = get_logger(__name__)


class DistributedLock:
    """Fail-fast mutual exclusion across stateless instances."""

    def __init__(
        self,
        cache: Optional[CacheBackend] = None,
        default_ttl: Optional[int] = None,
    ) -> None:
        self._cache = cache
        self._default_ttl = default_ttl or settings.session_creation_lock_ttl_seconds

    def _get_cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    async def acquire(self, key: str, ttl: Optional[int] = None) -> Optional[str]:
        """Try to take the lock once.

        Args:
            key: Lock key
            ttl: Seconds until the lock expires on its own

        Returns:
            The holder token on success, None if the lock is busy. Cache
            failures are reported as busy so nothing runs unguarded.
        """
        token = uuid.uuid4().hex
        try:
            acquired = await self._get_cache().set_if_absent(
                key, token.encode("utf-8"), ttl or self._default_ttl
            )
        except Exception as e:
            logger.error(
                f"Failed to acquire lock {key}: {type(e).__name__}: {e}",
                extra={"lock_key": key},
            )
            return None
        return token if acquired else None

    async def release(self, key: str, token: str) -> bool:
        """Release the lock if ``token`` still holds it.

        Returns:
            True if this call removed the lock.
        """
        try:
            released = await self._get_cache().compare_and_delete(
                key, token.encode("utf-8")
            )
        except Exception as e:
            # The TTL frees the lock eventually
            logger.warning(
                f"Failed to release lock {key}: {type(e).__name__}: {e}",
                extra={"lock_key": key},
            )
            return False
        if not released:
            logger.warning(
                f"Lock {key} expired or changed holder before release",
                extra={"lock_key": key},
            )
        return released
