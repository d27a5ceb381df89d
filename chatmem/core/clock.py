"""Time helpers. All timestamps inside the engine are aware UTC datetimes."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timezone, tzinfo

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_date(dt: datetime, tz: tzinfo) -> date:
    return ensure_utc(dt).astimezone(tz).date()


def sunday_weekday(dt: datetime) -> int:
    """Weekday with Sunday = 0 ... Saturday = 6."""
    return (dt.weekday() + 1) % 7
