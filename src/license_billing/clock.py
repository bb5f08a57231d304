"""Date and time helpers for billing periods."""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC.

    Naive values are taken to already be UTC; SQLite returns stored
    timestamps without tzinfo.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: date) -> datetime:
    """Midnight UTC at the start of a date."""
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def add_months(value: date, months: int) -> date:
    """Shift a date by whole months, clamping to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def whole_months_between(start: date, end: date) -> int:
    """Count complete months from start to end (0 if end is not after start)."""
    if end <= start:
        return 0
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, months) > end:
        months -= 1
    return max(months, 0)
