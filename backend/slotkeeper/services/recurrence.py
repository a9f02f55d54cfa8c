"""
Recurrence Expander.

Expands a rule into ordered occurrences and books each one through the
single-slot path (acquire hold → confirm). Occurrences are independent:
a conflict on one does not undo the others, the caller gets a per
occurrence report.

Stepping is done in the provider's local calendar, so a weekly 09:00
series stays at 09:00 wall-clock across DST changes. Monthly steps clamp
to the last day of shorter months (Jan 31 → Feb 28 → Mar 31).
"""

import calendar
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from ..errors import Conflict, ConflictReason, NotFound, StoreUnavailable, Unavailable
from ..utils.clock import local_to_utc, utc_to_local
from .holds import Hold, SlotLockManager
from .reservations import Booking, BookingDetails, ReservationEngine
from .slots.keys import SlotKey

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "monthly")

OUTCOME_BOOKED = "Booked"
OUTCOME_CONFLICT = "Conflict"
OUTCOME_UNAVAILABLE = "Unavailable"


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: str
    anchor: SlotKey
    interval: int = 1
    occurrence_count: int | None = None
    until_date: date | None = None

    def __post_init__(self):
        if self.frequency not in FREQUENCIES:
            raise ValueError(f"frequency must be one of {FREQUENCIES}, got {self.frequency!r}")
        if self.interval < 1:
            raise ValueError(f"interval must be >= 1, got {self.interval}")
        if (self.occurrence_count is None) == (self.until_date is None):
            raise ValueError("exactly one of occurrence_count / until_date is required")
        if self.occurrence_count is not None and self.occurrence_count < 1:
            raise ValueError(f"occurrence_count must be >= 1, got {self.occurrence_count}")


@dataclass(frozen=True)
class OccurrenceReport:
    slot_key: SlotKey
    outcome: str
    booking: Booking | None = None
    reason: str | None = None
    detail: str = ""

    @property
    def scheduled_at(self) -> datetime:
        return self.slot_key.start


def _add_months(day: date, months: int, anchor_day: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def _step(anchor_day: date, frequency: str, steps: int) -> date:
    if frequency == "daily":
        return anchor_day + timedelta(days=steps)
    if frequency == "weekly":
        return anchor_day + timedelta(weeks=steps)
    return _add_months(anchor_day, steps, anchor_day.day)


def enumerate_occurrences(
    rule: RecurrenceRule,
    tz: ZoneInfo,
    max_occurrences: int,
) -> list[SlotKey]:
    """
    Occurrence slot keys in chronological order.

    Bounded by occurrence_count or until_date (inclusive, provider-local),
    and always by max_occurrences.
    """
    local_start = utc_to_local(rule.anchor.start, tz)
    anchor_day = local_start.date()
    minute_of_day = local_start.hour * 60 + local_start.minute

    limit = max_occurrences
    if rule.occurrence_count is not None:
        limit = min(limit, rule.occurrence_count)

    slots = []
    k = 0
    while len(slots) < limit:
        day = _step(anchor_day, rule.frequency, k * rule.interval)
        if rule.until_date is not None and day > rule.until_date:
            break
        slots.append(SlotKey(
            rule.anchor.provider_id,
            local_to_utc(day, minute_of_day, tz),
            rule.anchor.duration_minutes,
        ))
        k += 1
    return slots


class RecurrenceExpander:
    def __init__(
        self,
        holds: SlotLockManager,
        engine: ReservationEngine,
        max_occurrences: int = 52,
    ):
        self.holds = holds
        self.engine = engine
        self.max_occurrences = max_occurrences

    def expand(
        self,
        rule: RecurrenceRule,
        tz: ZoneInfo,
        session_id: str,
        details: BookingDetails,
    ) -> list[OccurrenceReport]:
        """Book every occurrence in order. Not transactional across occurrences."""
        series_id = details.series_id or uuid.uuid4().hex
        details = replace(details, series_id=series_id)

        reports = []
        for slot_key in enumerate_occurrences(rule, tz, self.max_occurrences):
            reports.append(self._book_one(slot_key, session_id, details))

        booked = sum(1 for r in reports if r.outcome == OUTCOME_BOOKED)
        logger.info(
            f"Recurrence expanded: series={series_id} client={details.client_id} "
            f"booked={booked}/{len(reports)}"
        )
        return reports

    def _book_one(
        self,
        slot_key: SlotKey,
        session_id: str,
        details: BookingDetails,
    ) -> OccurrenceReport:
        try:
            hold = self.holds.acquire_hold(slot_key, session_id, client_id=details.client_id)
            if not isinstance(hold, Hold):
                return self._failure(slot_key, hold)

            result = self.engine.confirm(slot_key, session_id, details)
        except StoreUnavailable as e:
            logger.warning(f"Recurrence occurrence {slot_key.encode()} hit a store fault: {e}")
            self._release_quietly(slot_key, session_id)
            return OccurrenceReport(slot_key, OUTCOME_CONFLICT, reason=type(e).__name__, detail=str(e))

        if isinstance(result, Booking):
            return OccurrenceReport(slot_key, OUTCOME_BOOKED, booking=result)

        self.holds.release_hold(slot_key, session_id)
        return self._failure(slot_key, result)

    def _release_quietly(self, slot_key: SlotKey, session_id: str) -> None:
        try:
            self.holds.release_hold(slot_key, session_id)
        except StoreUnavailable as e:
            # The hold lapses on its own at expiry
            logger.error(f"Could not release hold {slot_key.encode()}: {e}")

    @staticmethod
    def _failure(slot_key: SlotKey, result) -> OccurrenceReport:
        if isinstance(result, Unavailable):
            return OccurrenceReport(slot_key, OUTCOME_UNAVAILABLE, reason=result.reason.value, detail=result.detail)
        if isinstance(result, Conflict):
            return OccurrenceReport(slot_key, OUTCOME_CONFLICT, reason=result.reason.value, detail=result.detail)
        if isinstance(result, NotFound):
            # Hold vanished between acquire and confirm
            return OccurrenceReport(
                slot_key,
                OUTCOME_CONFLICT,
                reason=ConflictReason.LOCKED_BY_OTHER.value,
                detail=f"{result.entity} {result.key} not found",
            )
        raise TypeError(f"Unexpected result {result!r}")
