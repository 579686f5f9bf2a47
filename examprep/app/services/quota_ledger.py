"""Daily practice session quota.

Each user has one QuotaRecord counting sessions started on the current UTC
day against the plan's daily limit (None = unlimited). The counter is reset
lazily: the first evaluation on a later UTC day zeroes it, so no background
job is needed. Consumption is a conditional relative UPDATE inside the
creation transaction, so the counter never passes the limit even when two
transactions race.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from examprep.app.core.cache import CacheBackend, get_cache
from examprep.app.core.cache_keys import decode_payload, encode_payload, user_quota_key
from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger
from examprep.app.core.utils import is_same_utc_day, next_utc_midnight, utc_now, utc_today
from examprep.app.db.async_session import get_async_session_maker
from examprep.app.db.crud import (
    create_quota_record,
    get_quota_record,
    increment_daily_usage,
    reset_daily_usage,
)
from examprep.app.db.models import QuotaRecord
from examprep.app.exceptions import QuotaExceededError
from examprep.app.services.retry import RetryPolicy, run_with_retry

logger = get_logger(__name__)


@dataclass
class QuotaEvaluation:
    """Result of checking a quota record against its plan limit.

    Attributes:
        can_take: Whether one more session may start today
        remaining: Sessions left today, None when unlimited
        reason: Human readable refusal, set only when can_take is False
        is_unlimited: Plan has no daily limit
        used_today: Sessions already started today
        limit: Plan daily limit, None when unlimited
        reset_at: Next UTC midnight, when the counter starts over
    """

    can_take: bool
    remaining: Optional[int]
    reason: Optional[str] = None
    is_unlimited: bool = False
    used_today: int = 0
    limit: Optional[int] = None
    reset_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "can_take": self.can_take,
            "remaining": self.remaining,
            "reason": self.reason,
            "is_unlimited": self.is_unlimited,
            "used_today": self.used_today,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuotaEvaluation":
        """Create from dictionary."""
        reset_at = data.get("reset_at")
        return cls(
            can_take=data["can_take"],
            remaining=data.get("remaining"),
            reason=data.get("reason"),
            is_unlimited=data.get("is_unlimited", False),
            used_today=data.get("used_today", 0),
            limit=data.get("limit"),
            reset_at=datetime.fromisoformat(reset_at) if reset_at else None,
        )

    def to_error(self) -> QuotaExceededError:
        return QuotaExceededError(
            limit=self.limit,
            used_today=self.used_today,
            reset_at=self.reset_at,
            detail=self.reason,
        )


def is_premium(record: QuotaRecord) -> bool:
    """Any plan other than the free plan counts as premium."""
    return record.plan_code != settings.free_plan_code


def _used_on(record: QuotaRecord, now: datetime) -> int:
    # A counter from an earlier UTC day no longer counts
    if not is_same_utc_day(record.last_usage_day, now):
        return 0
    return record.used_today or 0


class QuotaLedger:
    """Reads, resets and consumes per-user daily quota."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[CacheBackend] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._session_maker = session_maker
        self._cache = cache
        self._retry_policy = retry_policy

    def _get_cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    def _get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        if self._session_maker is None:
            self._session_maker = get_async_session_maker()
        return self._session_maker

    async def get_or_create(self, session: AsyncSession, user_id: str) -> QuotaRecord:
        """Return the user's quota record, creating a free-plan one if missing."""
        record = await get_quota_record(session, user_id)
        if record is None:
            record = await create_quota_record(
                session,
                user_id,
                plan_code=settings.free_plan_code,
                plan_limit=settings.free_plan_daily_limit,
            )
            logger.info(
                f"Created {settings.free_plan_code} quota record for user {user_id}",
                extra={"user_id": user_id},
            )
        return record

    async def reset_if_new_day(
        self, session: AsyncSession, record: QuotaRecord, now: Optional[datetime] = None
    ) -> bool:
        """Zero the daily counter if it belongs to an earlier UTC day.

        Returns:
            True if the counter was reset.
        """
        now = now or utc_now()
        if record.used_today > 0 and not is_same_utc_day(record.last_usage_day, now):
            await reset_daily_usage(session, record.user_id)
            record.used_today = 0
            logger.debug(
                f"Reset daily usage for user {record.user_id} "
                f"(last usage {record.last_usage_day})",
                extra={"user_id": record.user_id},
            )
            return True
        return False

    def evaluate(self, record: QuotaRecord, now: Optional[datetime] = None) -> QuotaEvaluation:
        """Check whether the user may start another session today."""
        now = now or utc_now()
        used = _used_on(record, now)
        reset_at = next_utc_midnight(now)

        if record.plan_limit is None:
            return QuotaEvaluation(
                can_take=True,
                remaining=None,
                is_unlimited=True,
                used_today=used,
                reset_at=reset_at,
            )

        remaining = max(0, record.plan_limit - used)
        reason = None
        if remaining == 0:
            reason = (
                f"Daily practice session limit of {record.plan_limit} reached. "
                f"Resets at {reset_at.isoformat()}."
            )
        return QuotaEvaluation(
            can_take=remaining > 0,
            remaining=remaining,
            reason=reason,
            used_today=used,
            limit=record.plan_limit,
            reset_at=reset_at,
        )

    async def increment_atomic(
        self, session: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> None:
        """Consume one session from today's quota.

        Raises:
            QuotaExceededError: the limit was reached by a concurrent transaction
        """
        now = now or utc_now()
        if await increment_daily_usage(session, user_id, utc_today(now), now):
            return

        record = await get_quota_record(session, user_id)
        limit = record.plan_limit if record is not None else None
        logger.info(
            f"Conditional quota increment rejected for user {user_id}",
            extra={"user_id": user_id},
        )
        raise QuotaExceededError(
            limit=limit,
            used_today=limit or 0,
            reset_at=next_utc_midnight(now),
        )

    async def get_status(self, user_id: str, now: Optional[datetime] = None) -> QuotaEvaluation:
        """Read-only quota evaluation for a user, cached for a short while.

        Cached entries never outlive the UTC midnight they were computed for.
        """
        now = now or utc_now()
        key = user_quota_key(user_id)
        try:
            cached = decode_payload(await self._get_cache().get(key))
        except Exception as e:
            logger.warning(f"Quota cache read failed for {key}: {e}")
            cached = None
        if cached is not None:
            try:
                evaluation = QuotaEvaluation.from_dict(cached)
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Ignoring malformed quota cache entry {key}")
            else:
                if evaluation.reset_at is None or evaluation.reset_at > now:
                    return evaluation

        async def load() -> QuotaEvaluation:
            async with self._get_session_maker()() as session:
                record = await get_quota_record(session, user_id)
            if record is None:
                record = QuotaRecord(
                    user_id=user_id,
                    plan_code=settings.free_plan_code,
                    plan_limit=settings.free_plan_daily_limit,
                    used_today=0,
                    total_used=0,
                )
            return self.evaluate(record, now)

        evaluation = await run_with_retry(load, self._retry_policy, name="get_quota_status")
        ttl = settings.quota_cache_ttl_seconds
        if evaluation.reset_at is not None:
            ttl = max(1, min(ttl, math.ceil((evaluation.reset_at - now).total_seconds())))
        try:
            await self._get_cache().set(key, encode_payload(evaluation.to_dict()), ttl)
        except Exception as e:
            logger.warning(f"Quota cache write failed for {key}: {e}")
        return evaluation
