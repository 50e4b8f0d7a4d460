"""
Calendar-day keys in the viewer's local timezone.

A day key is the local date formatted as YYYY-MM-DD, so string order is
calendar order. Day boundaries are computed from local midnights, which makes
DST days 23 or 25 hours long without changing which date an instant belongs to.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import List, Tuple

DAY_KEY_FORMAT = '%Y-%m-%d'


def _localize(instant: datetime, tz: tzinfo) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=tz)
    return instant.astimezone(tz)


def parse_day_key(day: str) -> date:
    return datetime.strptime(day, DAY_KEY_FORMAT).date()


def format_day_key(d: date) -> str:
    return d.strftime(DAY_KEY_FORMAT)


def to_day_key(instant: datetime, tz: tzinfo) -> str:
    """Local calendar day containing `instant`. Naive datetimes are taken as local time."""
    return format_day_key(_localize(instant, tz).date())


def day_bounds(day: str, tz: tzinfo) -> Tuple[datetime, datetime]:
    """[local midnight, next local midnight) for a day key, as aware datetimes."""
    d = parse_day_key(day)
    start = datetime.combine(d, time.min, tzinfo=tz)
    end = datetime.combine(d + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def day_range(start: datetime, end: datetime, tz: tzinfo) -> List[str]:
    """
    Every day whose local-midnight interval intersects [start, end], ascending.
    Both ends are inclusive, so an `end` exactly at midnight includes the day it opens.
    """
    start_local = _localize(start, tz)
    end_local = _localize(end, tz)
    if end_local < start_local:
        return []
    current = start_local.date()
    last = end_local.date()
    days = []
    while current <= last:
        days.append(format_day_key(current))
        current += timedelta(days=1)
    return days


def local_instant(day: str, time_of_day: str, tz: tzinfo) -> datetime:
    """Combine a day key with an upstream "HH:MM" or "HH:MM:SS" time of day."""
    parts = [int(p) for p in time_of_day.strip().split(':')]
    while len(parts) < 3:
        parts.append(0)
    hours, minutes, seconds = parts[:3]
    return datetime.combine(parse_day_key(day), time(hours, minutes, seconds), tzinfo=tz)


def shift_day(day: str, days: int) -> str:
    return format_day_key(parse_day_key(day) + timedelta(days=days))


def to_utc(instant: datetime, tz: tzinfo) -> datetime:
    """Absolute instant in UTC; aware datetimes sharing a ZoneInfo compare by wall clock."""
    return _localize(instant, tz).astimezone(timezone.utc)
