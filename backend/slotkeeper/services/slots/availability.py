# backend/slotkeeper/services/slots/availability.py
"""
Level 2: Provider availability.

Takes into account:
- Base provider slots (Level 1, cached in Redis Sorted Set)
- Existing bookings in pending/confirmed status
- Live holds (checkout locks and waitlist offers)
"""

from datetime import date, datetime, timedelta

from redis import Redis
from sqlalchemy.orm import Session

from ...utils.clock import get_zone, utc_to_local, utcnow
from .calculator import calculate_provider_day_slots, get_provider
from .config import BookingConfig, get_booking_config
from .keys import SlotKey
from .redis_store import SlotsRedisStore


def get_availability(
    db: Session,
    provider_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    duration_minutes: int | None = None,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
    now: datetime | None = None,
) -> list[SlotKey]:
    """
    Bookable slots for a provider over a provider-local date range.

    Returns:
        Ordered list of SlotKey. Empty list for unknown/inactive providers.
    """
    config = config or get_booking_config()
    now = now or utcnow()

    provider = get_provider(db, provider_id)
    if not provider:
        return []

    duration = duration_minutes or provider.slot_duration_minutes or config.default_duration_minutes
    if not config.accepts_duration(duration):
        return []

    dates = clamp_dates(start_date, end_date, provider.timezone, config, now)
    if not dates:
        return []

    # Step 1: Base slots per day (Level 1)
    base = _get_base_starts(db, provider, dates, duration, config, now, redis)
    # Cached grids are whole days; the last horizon day is cut at now + horizon
    horizon_end = now + timedelta(days=config.horizon_days)
    starts = sorted({
        start
        for day_starts in base.values()
        for start in day_starts
        if start <= horizon_end
    })
    if not starts:
        return []

    # Step 2: Subtract occupied intervals
    range_start = starts[0] - timedelta(minutes=config.max_duration_minutes)
    range_end = starts[-1] + timedelta(minutes=duration)
    occupied = get_occupied_intervals(db, provider_id, range_start, range_end, now)

    slots = []
    for start in starts:
        slot = SlotKey(provider_id, start, duration)
        if any(slot.overlaps(o_start, o_end) for o_start, o_end in occupied):
            continue
        slots.append(slot)
    return slots


def get_calendar(
    db: Session,
    provider_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    duration_minutes: int | None = None,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
    now: datetime | None = None,
) -> dict[date, int]:
    """Open slot count per provider-local day."""
    config = config or get_booking_config()
    now = now or utcnow()

    provider = get_provider(db, provider_id)
    if not provider:
        return {}

    dates = clamp_dates(start_date, end_date, provider.timezone, config, now)
    counts = {dt: 0 for dt in dates}
    if not dates:
        return counts

    tz = get_zone(provider.timezone)
    slots = get_availability(
        db, provider_id, dates[0], dates[-1], duration_minutes, config, redis, now
    )
    for slot in slots:
        local_date = utc_to_local(slot.start, tz).date()
        if local_date in counts:
            counts[local_date] += 1
    return counts


def suggest_alternatives(
    db: Session,
    slot: SlotKey,
    limit: int = 3,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
    now: datetime | None = None,
) -> list[SlotKey]:
    """
    Nearby open slots for a slot that was just taken.

    Looks at the requested provider-local day and the day after, ordered by
    distance from the requested start.
    """
    provider = get_provider(db, slot.provider_id)
    if not provider:
        return []

    local_date = utc_to_local(slot.start, get_zone(provider.timezone)).date()
    candidates = get_availability(
        db,
        slot.provider_id,
        local_date,
        local_date + timedelta(days=1),
        slot.duration_minutes,
        config,
        redis,
        now,
    )
    candidates = [c for c in candidates if c != slot]
    candidates.sort(key=lambda c: abs((c.start - slot.start).total_seconds()))
    return candidates[:limit]


def clamp_dates(
    start_date: date | None,
    end_date: date | None,
    timezone_name: str | None,
    config: BookingConfig,
    now: datetime,
) -> list[date]:
    """Clamp a requested range to [today, today + horizon] (provider-local)."""
    today = utc_to_local(now, get_zone(timezone_name)).date()
    max_date = today + timedelta(days=config.horizon_days)

    if start_date is None:
        start_date = today
    if end_date is None:
        end_date = start_date

    start_date = max(start_date, today)
    end_date = min(end_date, max_date)
    if end_date < start_date:
        return []

    return [start_date + timedelta(days=i) for i in range((end_date - start_date).days + 1)]


def get_occupied_intervals(
    db: Session,
    provider_id: int,
    range_start: datetime,
    range_end: datetime,
    now: datetime,
) -> list[tuple[datetime, datetime]]:
    """Intervals taken by pending/confirmed bookings and live holds."""
    intervals = []
    for booking in _get_active_bookings(db, provider_id, range_start, range_end):
        start = booking.scheduled_at
        intervals.append((start, start + timedelta(minutes=booking.duration_minutes)))
    for hold in _get_live_holds(db, provider_id, range_start, range_end, now):
        start = hold.start_at
        intervals.append((start, start + timedelta(minutes=hold.duration_minutes)))
    return intervals


def find_overlapping_booking(
    db: Session,
    slot: SlotKey,
    exclude_booking_id: int | None = None,
    config: BookingConfig | None = None,
):
    """First pending/confirmed booking overlapping the slot, if any."""
    config = config or get_booking_config()
    range_start = slot.start - timedelta(minutes=config.max_duration_minutes)
    for booking in _get_active_bookings(db, slot.provider_id, range_start, slot.end):
        if booking.id == exclude_booking_id:
            continue
        b_end = booking.scheduled_at + timedelta(minutes=booking.duration_minutes)
        if slot.overlaps(booking.scheduled_at, b_end):
            return booking
    return None


# ── Base slots (Level 1 with cache) ─────────────────────────────────────


def _get_base_starts(
    db: Session,
    provider,
    dates: list[date],
    duration: int,
    config: BookingConfig,
    now: datetime,
    redis: Redis | None,
) -> dict[date, list[datetime]]:
    """Get base provider starts per day, using Redis cache when available."""
    result: dict[date, list[datetime]] = {}

    if redis is None:
        # No Redis, calculate on the fly
        for dt in dates:
            slots = calculate_provider_day_slots(db, provider, dt, duration, config, now)
            result[dt] = [start for start, _ in slots]
        return result

    store = SlotsRedisStore(redis, config)
    to_store: dict[date, list[tuple[datetime, float]]] = {}
    for dt in dates:
        cached = store.get_available_slots(provider.id, dt, duration, now)
        if cached is not None:
            result[dt] = cached
            continue

        # Cache miss: calculate and store
        slots = calculate_provider_day_slots(db, provider, dt, duration, config, now)
        to_store[dt] = slots
        result[dt] = [start for start, _ in slots]

    if to_store:
        store.store_multiple_days(provider.id, duration, to_store)
    return result


# ── Database helpers ─────────────────────────────────────────────────────


def _get_active_bookings(
    db: Session,
    provider_id: int,
    range_start: datetime,
    range_end: datetime,
) -> list:
    """Pending/confirmed bookings starting in [range_start, range_end)."""
    from ...models.generated import ACTIVE_BOOKING_STATUSES, Bookings

    return (
        db.query(Bookings)
        .filter(
            Bookings.provider_id == provider_id,
            Bookings.scheduled_at >= range_start,
            Bookings.scheduled_at < range_end,
            Bookings.status.in_(ACTIVE_BOOKING_STATUSES),
        )
        .all()
    )


def _get_live_holds(
    db: Session,
    provider_id: int,
    range_start: datetime,
    range_end: datetime,
    now: datetime,
) -> list:
    """Non-expired holds starting in [range_start, range_end)."""
    from ...models.generated import SlotHolds

    return (
        db.query(SlotHolds)
        .filter(
            SlotHolds.provider_id == provider_id,
            SlotHolds.start_at >= range_start,
            SlotHolds.start_at < range_end,
            SlotHolds.expires_at > now,
        )
        .all()
    )
