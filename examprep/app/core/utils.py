"""Utility functions for examprep.

Quota days are UTC calendar days regardless of the server or user timezone.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_today(now: Optional[datetime] = None) -> date:
    """UTC calendar date of ``now`` (defaults to the current time)."""
    return as_utc(now or utc_now()).date()


def next_utc_midnight(now: Optional[datetime] = None) -> datetime:
    """The next UTC midnight strictly after ``now``.

    Examples:
        >>> next_utc_midnight(datetime(2026, 3, 1, 17, 30, tzinfo=timezone.utc))
        datetime.datetime(2026, 3, 2, 0, 0, tzinfo=datetime.timezone.utc)
    """
    today = utc_today(now)
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)


def is_same_utc_day(day: Optional[date], now: Optional[datetime] = None) -> bool:
    """Check whether ``day`` is the UTC calendar date of ``now``."""
    if day is None:
        return False
    return day == utc_today(now)
