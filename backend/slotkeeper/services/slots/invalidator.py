# backend/slotkeeper/services/slots/invalidator.py
"""
Cache invalidation for provider base slots.

Triggers:
✓ Provider work_schedule / timezone changed → invalidate all dates
✓ Blocked interval created/deleted → invalidate affected dates

Does NOT trigger:
✗ Booking confirmed/cancelled (Level 2 calculates on-the-fly)
✗ Hold acquired/released (Level 2)
"""

import logging
from datetime import date, timedelta

from redis import Redis

from ...utils.clock import get_zone, utc_to_local
from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


def invalidate_provider_cache(
    redis: Redis | None,
    provider_id: int,
    dates: list[date] | None = None,
) -> int:
    """
    Invalidate cached grids for provider.

    Args:
        redis: Redis client (None → nothing cached, nothing to do)
        provider_id: Provider ID
        dates: List of specific dates to invalidate,
               or None to invalidate all cached dates

    Returns:
        Number of deleted cache keys
    """
    if redis is None:
        return 0

    store = SlotsRedisStore(redis)
    deleted = store.delete_day_slots(provider_id, dates)
    logger.info(f"Slots cache invalidated: provider={provider_id} keys={deleted}")
    return deleted


def get_affected_dates(
    date_start: date,
    date_end: date,
) -> list[date]:
    """
    Get list of dates in range [date_start, date_end].

    Args:
        date_start: Start date (inclusive)
        date_end: End date (inclusive)

    Returns:
        List of dates
    """
    if date_start > date_end:
        date_start, date_end = date_end, date_start

    dates = []
    current = date_start
    while current <= date_end:
        dates.append(current)
        current += timedelta(days=1)

    return dates


def get_affected_dates_from_block(block, timezone_name: str | None) -> list[date]:
    """
    Provider-local dates touched by a blocked interval.

    Args:
        block: BlockedIntervals row (start_at, end_at in naive UTC)
        timezone_name: Provider IANA time zone

    Returns:
        List of dates
    """
    tz = get_zone(timezone_name)
    start = utc_to_local(block.start_at, tz).date()
    end = utc_to_local(block.end_at, tz).date()
    return get_affected_dates(start, end)
