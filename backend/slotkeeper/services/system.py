"""
Wiring of the reservation components.

One ReservationSystem per process: a shared per-slot mutex registry, one
broadcaster, and the components built on top of them. The waitlist is
connected to slot events through broadcaster listeners.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable
from zoneinfo import ZoneInfo

from redis import Redis

from ..config import Settings, settings as default_settings
from ..errors import store_guard
from ..utils.clock import get_zone, utcnow
from .events import Broadcaster, EventStream
from .holds import SlotLockManager
from .recurrence import OccurrenceReport, RecurrenceExpander, RecurrenceRule
from .reservations import BookingDetails, ReservationEngine
from .slot_mutex import SlotMutexRegistry
from .slots.availability import get_availability, get_calendar, suggest_alternatives
from .slots.calculator import get_provider
from .slots.config import BookingConfig, get_booking_config
from .slots.keys import SlotKey
from .waitlist import WaitlistCoordinator

logger = logging.getLogger(__name__)


@dataclass
class ReservationSystem:
    session_factory: Callable
    settings: Settings
    config: BookingConfig
    redis: Redis | None
    clock: Callable[[], datetime]
    mutexes: SlotMutexRegistry
    broadcaster: Broadcaster
    holds: SlotLockManager
    engine: ReservationEngine
    waitlist: WaitlistCoordinator
    recurrence: RecurrenceExpander

    # ── Availability ─────────────────────────────────────────────────────

    def availability(
        self,
        provider_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        duration_minutes: int | None = None,
    ) -> list[SlotKey]:
        db = self.session_factory()
        try:
            with store_guard():
                return get_availability(
                    db, provider_id, start_date, end_date, duration_minutes,
                    self.config, self.redis, self.clock(),
                )
        finally:
            db.close()

    def calendar(
        self,
        provider_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        duration_minutes: int | None = None,
    ) -> dict[date, int]:
        db = self.session_factory()
        try:
            with store_guard():
                return get_calendar(
                    db, provider_id, start_date, end_date, duration_minutes,
                    self.config, self.redis, self.clock(),
                )
        finally:
            db.close()

    def alternatives(self, slot_key: SlotKey, limit: int = 3) -> list[SlotKey]:
        db = self.session_factory()
        try:
            with store_guard():
                return suggest_alternatives(db, slot_key, limit, self.config, self.redis, self.clock())
        finally:
            db.close()

    def provider_zone(self, provider_id: int) -> ZoneInfo | None:
        """Provider time zone, or None for unknown/inactive providers."""
        db = self.session_factory()
        try:
            with store_guard():
                provider = get_provider(db, provider_id)
                return get_zone(provider.timezone) if provider else None
        finally:
            db.close()

    # ── Series / realtime ────────────────────────────────────────────────

    def expand_recurrence(
        self,
        rule: RecurrenceRule,
        session_id: str,
        details: BookingDetails,
    ) -> list[OccurrenceReport] | None:
        """None when the anchor's provider is unknown."""
        tz = self.provider_zone(rule.anchor.provider_id)
        if tz is None:
            return None
        return self.recurrence.expand(rule, tz, session_id, details)

    def subscribe(
        self,
        provider_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        client_id: str | None = None,
    ) -> EventStream:
        tz = self.provider_zone(provider_id) or ZoneInfo("UTC")
        return self.broadcaster.subscribe(provider_id, start_date, end_date, tz, client_id)

    # ── Background ───────────────────────────────────────────────────────

    def sweep(self) -> dict[str, int]:
        """Expire lapsed waitlist offers, then expired holds."""
        offers = self.waitlist.expire_offers()
        holds = self.holds.sweep_expired()
        if offers or holds:
            logger.info(f"Sweep: offers_expired={offers} holds_expired={holds}")
        return {"offers_expired": offers, "holds_expired": holds}


def build_system(
    session_factory,
    redis: Redis | None = None,
    settings: Settings | None = None,
    config: BookingConfig | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> ReservationSystem:
    settings = settings or default_settings
    config = config or get_booking_config()

    mutexes = SlotMutexRegistry(timeout=settings.operation_timeout_seconds)
    broadcaster = Broadcaster(session_factory, redis=redis, clock=clock)
    holds = SlotLockManager(
        session_factory,
        mutexes,
        broadcaster,
        config=config,
        hold_ttl_seconds=settings.hold_ttl_seconds,
        max_hold_ttl_seconds=settings.max_hold_ttl_seconds,
        clock=clock,
    )
    engine = ReservationEngine(
        session_factory,
        mutexes,
        broadcaster,
        config=config,
        cancellation_window_hours=settings.cancellation_window_hours,
        clock=clock,
    )
    waitlist = WaitlistCoordinator(
        session_factory,
        mutexes,
        holds,
        broadcaster,
        config=config,
        claim_window_seconds=settings.waitlist_claim_window_seconds,
        clock=clock,
    )
    waitlist.register()
    recurrence = RecurrenceExpander(holds, engine, max_occurrences=settings.recurrence_max_occurrences)

    return ReservationSystem(
        session_factory=session_factory,
        settings=settings,
        config=config,
        redis=redis,
        clock=clock,
        mutexes=mutexes,
        broadcaster=broadcaster,
        holds=holds,
        engine=engine,
        waitlist=waitlist,
        recurrence=recurrence,
    )
