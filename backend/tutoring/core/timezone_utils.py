"""UTC helpers shared by services and tests."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes; everything stored by the core is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def week_bounds(week_start: date) -> tuple[datetime, datetime]:
    """UTC [monday 00:00, next monday 00:00) for a week starting on ``week_start``."""
    start = datetime.combine(week_start, time(0, 0), tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


def slot_datetime(week_start: date, day_of_week: int, at: time) -> datetime:
    """Concrete UTC datetime of a weekly slot (day_of_week 0=Monday)."""
    return datetime.combine(week_start + timedelta(days=day_of_week), at, tzinfo=timezone.utc)
