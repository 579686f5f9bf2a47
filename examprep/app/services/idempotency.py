"""Idempotency record store.

Maps (user, token) to the result of a committed session creation so a
retried request returns the original session instead of creating a new one.
Records are written once and expire after ``idempotency_ttl_seconds``.
"""

from typing import Optional

from pydantic import ValidationError

from examprep.app.core.cache import CacheBackend, get_cache
from examprep.app.core.cache_keys import decode_payload, encode_payload, idempotency_key
from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger
from examprep.app.services.schemas import SessionCreationResult

logger = get_logger(__name__)


class IdempotencyStore:
    def __init__(
        self,
        cache: Optional[CacheBackend] = None,
        default_ttl: Optional[int] = None,
    ) -> None:
        self._cache = cache
        self._default_ttl = default_ttl or settings.idempotency_ttl_seconds

    def _get_cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    async def get(self, user_id: str, token: str) -> Optional[SessionCreationResult]:
        """Look up a stored result.

        Unreadable, stale-version or unreachable entries count as a miss.
        """
        key = idempotency_key(user_id, token)
        try:
            raw = await self._get_cache().get(key)
        except Exception as e:
            logger.warning(
                f"Idempotency lookup failed for {key}: {type(e).__name__}: {e}",
                extra={"user_id": user_id, "idempotency_key": token},
            )
            return None

        data = decode_payload(raw)
        if data is None:
            return None
        try:
            return SessionCreationResult.from_dict(data)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(
                f"Discarding malformed idempotency record {key}: {e}",
                extra={"user_id": user_id, "idempotency_key": token},
            )
            return None

    async def put(
        self,
        user_id: str,
        token: str,
        result: SessionCreationResult,
        ttl: Optional[int] = None,
    ) -> bool:
        """Store ``result`` unless a record already exists for the token.

        Returns:
            True if the record was written.
        """
        key = idempotency_key(user_id, token)
        return await self._get_cache().set_if_absent(
            key, encode_payload(result.to_dict()), ttl or self._default_ttl
        )
