"""
UTC Day and Window Helpers

Every timestamp in the row store is naive UTC; these helpers keep the day
boundaries and sub-window arithmetic in one place.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, List, Tuple

Window = Tuple[datetime, datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def day_bounds(day: date) -> Window:
    """[dayStart, dayEnd) for a UTC calendar day."""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def floor_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def split_windows(start: datetime, end: datetime, minutes: int) -> List[Window]:
    """Consecutive [start, end) sub-windows of the given size, in order."""
    step = timedelta(minutes=minutes)
    windows: List[Window] = []
    cursor = start
    while cursor < end:
        nxt = min(cursor + step, end)
        windows.append((cursor, nxt))
        cursor = nxt
    return windows


def date_range(start: date, end: date) -> Iterator[date]:
    """Inclusive ascending range of days."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def yesterday(now: datetime) -> date:
    return (now - timedelta(days=1)).date()
