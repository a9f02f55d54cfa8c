"""
Time helpers.

All datetimes persisted by the engine are naive UTC. Provider schedules are
wall-clock times in the provider's IANA zone and are converted here.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def local_to_utc(day: date, minutes: int, tz: ZoneInfo) -> datetime:
    """Wall-clock minute-of-day on `day` in `tz` -> naive UTC."""
    # Aware + timedelta is wall-clock arithmetic, so 24:00 lands on next midnight
    local = datetime.combine(day, time(0), tzinfo=tz) + timedelta(minutes=minutes)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive UTC -> aware local datetime in `tz`."""
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def timestamp(value: datetime) -> float:
    """Unix timestamp of a naive UTC datetime."""
    return value.replace(tzinfo=timezone.utc).timestamp()
