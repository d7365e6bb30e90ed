"""
Calendar arithmetic helpers.

All scheduling code works with timezone-aware ``datetime`` instants. Raw values
coming from the store or from API payloads are converted with ``to_instant``
and written back with ``to_store``; nothing else should parse timestamps.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

STORE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    """
    Get current UTC time.
    The only place the wall clock is read; pure scheduling logic takes `now`
    as a parameter instead.
    """
    return datetime.now(timezone.utc)


def to_instant(value: Any) -> Optional[datetime]:
    """
    Convert any supported timestamp representation into an aware datetime.

    Accepts datetimes (naive ones are taken as UTC), dates (midnight UTC),
    ISO-8601 strings (a trailing "Z" is allowed), epoch seconds and
    {"seconds": ..., "nanoseconds": ...} mappings. Returns None for anything
    that cannot be interpreted as an instant.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        if not isinstance(seconds, (int, float)) or not isinstance(nanos, (int, float)):
            return None
        return to_instant(seconds + nanos / 1_000_000_000)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_instant(datetime.fromisoformat(text))
        except ValueError:
            return None

    return None


def to_store(instant: datetime) -> str:
    """Encode an instant for the document store (fixed-width UTC, sortable as text)."""
    return to_instant(instant).astimezone(timezone.utc).strftime(STORE_FORMAT)


def from_store(value: Any) -> Optional[datetime]:
    return to_instant(value)


def get_zone(tz_name: Optional[str]):
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def localize(instant: datetime, tz_name: Optional[str]) -> datetime:
    """Express an instant in the given zone (UTC when the zone is unknown)."""
    return instant.astimezone(get_zone(tz_name))


def add_days(instant: datetime, days: int) -> datetime:
    return instant + timedelta(days=days)


def add_weeks(instant: datetime, weeks: int) -> datetime:
    return instant + timedelta(weeks=weeks)


def add_months(instant: datetime, months: int) -> datetime:
    """Add calendar months, clamping to the last day of the target month."""
    return instant + relativedelta(months=months)


def days_in_month(instant: datetime) -> int:
    return calendar.monthrange(instant.year, instant.month)[1]


def start_of_day(instant: datetime) -> datetime:
    return instant.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_minute(instant: datetime) -> datetime:
    return instant.replace(second=0, microsecond=0)


def start_of_next_month(instant: datetime) -> datetime:
    return start_of_day(instant.replace(day=1)) + relativedelta(months=1)


def sunday_weekday(instant: datetime) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (instant.weekday() + 1) % 7


def same_day_or_before(first: datetime, second: datetime) -> bool:
    """True when `first` falls on the same calendar day as `second` or earlier.

    Days are taken in `second`'s timezone.
    """
    return first.astimezone(second.tzinfo).date() <= second.date()
