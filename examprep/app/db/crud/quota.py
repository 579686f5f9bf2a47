"""Quota record CRUD operations."""
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from examprep.app.db.models import QuotaRecord


async def get_quota_record(session: AsyncSession, user_id: str) -> QuotaRecord | None:
    """Get the quota record for a user, or None if the user has none yet."""
    result = await session.execute(
        select(QuotaRecord).where(QuotaRecord.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def create_quota_record(
    session: AsyncSession,
    user_id: str,
    plan_code: str,
    plan_limit: int | None,
) -> QuotaRecord:
    """Insert a fresh quota record. The caller owns the transaction."""
    record = QuotaRecord(
        user_id=user_id,
        plan_code=plan_code,
        plan_limit=plan_limit,
        used_today=0,
        last_usage_day=None,
        total_used=0,
    )
    session.add(record)
    await session.flush()
    return record


async def reset_daily_usage(session: AsyncSession, user_id: str) -> None:
    """Zero the daily counter for a user."""
    await session.execute(
        update(QuotaRecord)
        .where(QuotaRecord.user_id == user_id)
        .values(used_today=0)
    )


async def increment_daily_usage(
    session: AsyncSession,
    user_id: str,
    today: date,
    now: datetime,
) -> bool:
    """Atomically add one use to the daily and total counters.

    A single conditional UPDATE with a relative increment: it only applies
    while the user is under the plan limit (or the plan is unlimited), so the
    counter can never pass the limit even without an outer lock.

    Returns:
        True if the row was incremented, False if the limit was already reached
        or the record does not exist.
    """
    result = await session.execute(
        update(QuotaRecord)
        .where(
            QuotaRecord.user_id == user_id,
            or_(
                QuotaRecord.plan_limit.is_(None),
                QuotaRecord.used_today < QuotaRecord.plan_limit,
            ),
        )
        .values(
            used_today=QuotaRecord.used_today + 1,
            total_used=QuotaRecord.total_used + 1,
            last_usage_day=today,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
