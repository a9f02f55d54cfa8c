# backend/slotkeeper/services/slots/calculator.py
"""
Level 1: Base provider slot calculation.

Produces per-slot data:
  (start datetime naive UTC, expire_ts float)

expire_ts = (slot_start − min_advance_minutes).timestamp()
Redis filters with ZRANGEBYSCORE {now_ts} +inf, so dead slots drop automatically.

Contains:
✓ weekly work_schedule of provider (wall-clock in provider time zone)
✓ blocked intervals of provider
✓ min_advance_minutes (baked into expire_ts)

Does NOT contain:
✗ Bookings (checked at Level 2)
✗ Holds (checked at Level 2)
"""

import json
import logging
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ...errors import Unavailable, UnavailableReason
from ...utils.clock import get_zone, local_to_utc, timestamp, utc_to_local, utcnow
from .config import BookingConfig, get_booking_config, time_str_to_minutes
from .keys import SlotKey

logger = logging.getLogger(__name__)

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

Interval = tuple[datetime, datetime]


def calculate_day_slots(
    schedule: dict,
    blocks: list[Interval],
    target_date: date,
    duration_minutes: int,
    tz: ZoneInfo,
    config: BookingConfig | None = None,
    now: datetime | None = None,
) -> list[tuple[datetime, float]]:
    """
    Calculate bookable start times for one provider-local date.

    Returns:
        Ordered, deduplicated list of (start_utc, expire_ts). Empty list = no slots.
    """
    config = config or get_booking_config()
    now = now or utcnow()
    now_ts = timestamp(now)
    lead = timedelta(minutes=config.min_advance_minutes)

    starts: set[datetime] = set()
    for start_min, end_min in _get_day_intervals(schedule, target_date):
        # Zero-length and inverted windows produce nothing
        t = start_min
        while t + duration_minutes <= end_min:
            starts.add(local_to_utc(target_date, t, tz))
            t += duration_minutes

    slots: list[tuple[datetime, float]] = []
    for start in sorted(starts):
        end = start + timedelta(minutes=duration_minutes)
        if _overlaps_any(start, end, blocks):
            continue

        expire_ts = timestamp(start - lead)
        if expire_ts >= now_ts:
            slots.append((start, expire_ts))

    return slots


def classify_slot(
    schedule: dict,
    blocks: list[Interval],
    slot: SlotKey,
    tz: ZoneInfo,
    config: BookingConfig | None = None,
    now: datetime | None = None,
) -> Unavailable | None:
    """
    Check a single slot against the same rules as calculate_day_slots.

    Returns:
        None when the slot is bookable, otherwise Unavailable with a reason.
    """
    config = config or get_booking_config()
    now = now or utcnow()

    if not config.accepts_duration(slot.duration_minutes):
        return Unavailable(
            UnavailableReason.OUTSIDE_SCHEDULE,
            f"Duration must be {config.min_duration_minutes}-{config.max_duration_minutes} minutes",
        )

    if slot.start < now + timedelta(minutes=config.min_advance_minutes):
        return Unavailable(
            UnavailableReason.PAST_DEADLINE,
            f"Slot must start at least {config.min_advance_minutes} minutes from now",
        )

    if slot.start > now + timedelta(days=config.horizon_days):
        return Unavailable(
            UnavailableReason.OUTSIDE_SCHEDULE,
            f"Slot cannot be more than {config.horizon_days} days ahead",
        )

    local_start = utc_to_local(slot.start, tz)
    local_date = local_start.date()
    start_min = local_start.hour * 60 + local_start.minute

    on_grid = False
    for win_start, win_end in _get_day_intervals(schedule, local_date):
        offset = start_min - win_start
        if (
            offset >= 0
            and offset % slot.duration_minutes == 0
            and start_min + slot.duration_minutes <= win_end
        ):
            on_grid = True
            break

    if not on_grid:
        return Unavailable(
            UnavailableReason.OUTSIDE_SCHEDULE,
            "Slot is outside the provider's working hours",
        )

    if _overlaps_any(slot.start, slot.end, blocks):
        return Unavailable(UnavailableReason.BLOCKED, "Slot overlaps a blocked interval")

    return None


# ── Helpers ──────────────────────────────────────────────────────────────


def parse_schedule(raw: str | dict | None) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        schedule = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning("Invalid work_schedule JSON, treating as empty")
        schedule = {}
    return schedule if isinstance(schedule, dict) else {}


def _get_day_intervals(
    schedule: dict,
    target_date: date,
) -> list[tuple[int, int]]:
    """
    Extract working intervals for target_date as (start_min, end_min).

    Supported shapes per day (keyed "mon".."sun" or "0".."6", Monday = 0):
      {"enabled": true, "start": "09:00", "end": "18:00"}
      [["09:00", "13:00"], ["14:00", "18:00"]]
      null  (day off)
    """
    weekday = target_date.weekday()

    day_data = schedule.get(str(weekday))
    if day_data is None:
        day_data = schedule.get(DAY_NAMES[weekday])

    raw_intervals: list = []
    if isinstance(day_data, dict):
        if not day_data.get("enabled", True):
            return []
        start = day_data.get("start")
        end = day_data.get("end")
        if start and end:
            raw_intervals = [[start, end]]
    elif isinstance(day_data, list):
        raw_intervals = day_data

    intervals = []
    for interval in raw_intervals:
        if not isinstance(interval, (list, tuple)) or len(interval) != 2:
            continue
        try:
            intervals.append((time_str_to_minutes(interval[0]), time_str_to_minutes(interval[1])))
        except (ValueError, AttributeError):
            continue
    return intervals


def _overlaps_any(start: datetime, end: datetime, blocks: list[Interval]) -> bool:
    # Half-open [start, end) overlap; overlapping blocks need no merging
    return any(start < b_end and b_start < end for b_start, b_end in blocks)


# ── Database helpers ─────────────────────────────────────────────────────


def get_provider(db: Session, provider_id: int):
    """Get active provider by ID."""
    from ...models.generated import Providers
    return db.query(Providers).filter(
        Providers.id == provider_id,
        Providers.is_active == 1,
    ).first()


def get_provider_blocks(
    db: Session,
    provider_id: int,
    range_start: datetime,
    range_end: datetime,
) -> list[Interval]:
    """Blocked intervals intersecting [range_start, range_end)."""
    from ...models.generated import BlockedIntervals

    rows = (
        db.query(BlockedIntervals)
        .filter(
            BlockedIntervals.provider_id == provider_id,
            BlockedIntervals.start_at < range_end,
            BlockedIntervals.end_at > range_start,
        )
        .all()
    )
    return [(row.start_at, row.end_at) for row in rows]


def calculate_provider_day_slots(
    db: Session,
    provider,
    target_date: date,
    duration_minutes: int,
    config: BookingConfig | None = None,
    now: datetime | None = None,
) -> list[tuple[datetime, float]]:
    """calculate_day_slots with schedule and blocks loaded from the store."""
    tz = get_zone(provider.timezone)
    day_start = local_to_utc(target_date, 0, tz)
    day_end = local_to_utc(target_date, 24 * 60, tz)
    blocks = get_provider_blocks(db, provider.id, day_start, day_end)

    return calculate_day_slots(
        parse_schedule(provider.work_schedule),
        blocks,
        target_date,
        duration_minutes,
        tz,
        config,
        now,
    )


def validate_slot(
    db: Session,
    slot: SlotKey,
    config: BookingConfig | None = None,
    now: datetime | None = None,
) -> Unavailable | None:
    """classify_slot with schedule and blocks loaded from the store."""
    provider = get_provider(db, slot.provider_id)
    if not provider:
        return Unavailable(UnavailableReason.OUTSIDE_SCHEDULE, "Provider not found or inactive")

    blocks = get_provider_blocks(db, provider.id, slot.start, slot.end)
    return classify_slot(
        parse_schedule(provider.work_schedule),
        blocks,
        slot,
        get_zone(provider.timezone),
        config,
        now,
    )
