"""
Waitlist Coordinator.

FIFO queue per slot key (ordered by requested_at, then id). When a slot
becomes free (`freed` / `released` events) the earliest waiting client gets
an offer: the slot is reserved for them until `offer_expires_at` and a
`waitlist-offered` event is addressed to them. An offer that lapses is
dropped (`waitlist-expired`) and the next waiter is offered. A confirm by
the offered client removes their entry.

Promotion is driven by broadcaster listeners, never by direct calls from
the Reservation Engine.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from ..errors import Ack, Unavailable, store_guard
from ..models.generated import WaitlistEntries
from ..utils.clock import utcnow
from .events import (
    EVENT_BOOKED,
    EVENT_FREED,
    EVENT_RELEASED,
    EVENT_WAITLIST_EXPIRED,
    EVENT_WAITLIST_OFFERED,
    Broadcaster,
    SlotEvent,
)
from .holds import SlotLockManager
from .slot_mutex import SlotMutexRegistry
from .slots.availability import find_overlapping_booking
from .slots.calculator import validate_slot
from .slots.config import BookingConfig, get_booking_config
from .slots.keys import SlotKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitlistEntry:
    id: int
    slot_key: str
    provider_id: int
    client_id: str
    requested_at: datetime
    offer_expires_at: datetime | None = None

    @property
    def is_offered(self) -> bool:
        return self.offer_expires_at is not None

    @classmethod
    def from_row(cls, row: WaitlistEntries) -> "WaitlistEntry":
        return cls(
            id=row.id,
            slot_key=row.slot_key,
            provider_id=row.provider_id,
            client_id=row.client_id,
            requested_at=row.requested_at,
            offer_expires_at=row.offer_expires_at,
        )


class WaitlistCoordinator:
    def __init__(
        self,
        session_factory,
        mutexes: SlotMutexRegistry,
        holds: SlotLockManager,
        broadcaster: Broadcaster,
        config: BookingConfig | None = None,
        claim_window_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.mutexes = mutexes
        self.holds = holds
        self.broadcaster = broadcaster
        self.config = config or get_booking_config()
        self.claim_window = timedelta(seconds=claim_window_seconds)
        self.clock = clock

    def register(self) -> None:
        """Subscribe to slot events on the broadcaster."""
        self.broadcaster.add_listener(EVENT_FREED, self.on_slot_freed)
        self.broadcaster.add_listener(EVENT_RELEASED, self.on_slot_freed)
        self.broadcaster.add_listener(EVENT_BOOKED, self.on_slot_booked)

    # ── Client operations ────────────────────────────────────────────────

    def join(self, slot_key: SlotKey, client_id: str) -> WaitlistEntry | Unavailable:
        """
        Queue a client for a slot. Joining twice returns the existing entry.

        No offer is made on join, even if the slot happens to be free.
        """
        key = slot_key.encode()
        now = self.clock()
        db = self.session_factory()
        try:
            with store_guard():
                unavailable = validate_slot(db, slot_key, self.config, now)
                if unavailable:
                    return unavailable

                existing = self._find(db, key, client_id)
                if existing:
                    return WaitlistEntry.from_row(existing)

                row = WaitlistEntries(
                    slot_key=key,
                    provider_id=slot_key.provider_id,
                    client_id=client_id,
                    requested_at=now,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return WaitlistEntry.from_row(self._find(db, key, client_id))

                logger.info(f"Waitlist join: {key} client={client_id}")
                return WaitlistEntry.from_row(row)
        finally:
            db.close()

    def withdraw(self, slot_key: SlotKey, client_id: str) -> Ack:
        """Leave the queue. Withdrawing an active offer passes it to the next waiter."""
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            db = self.session_factory()
            try:
                with store_guard():
                    row = self._find(db, key, client_id)
                    if row is None:
                        return Ack("not waiting")
                    had_offer = row.offer_expires_at is not None
                    db.delete(row)
                    db.commit()
            finally:
                db.close()

            logger.info(f"Waitlist withdraw: {key} client={client_id}")
            if had_offer:
                self.holds.clear_reservation(slot_key, client_id)
                self._offer_next(slot_key)
            return Ack("withdrawn")

    def entries(self, slot_key: SlotKey) -> list[WaitlistEntry]:
        """Queue for a slot in FIFO order."""
        db = self.session_factory()
        try:
            with store_guard():
                rows = (
                    db.query(WaitlistEntries)
                    .filter(WaitlistEntries.slot_key == slot_key.encode())
                    .order_by(WaitlistEntries.requested_at, WaitlistEntries.id)
                    .all()
                )
                return [WaitlistEntry.from_row(row) for row in rows]
        finally:
            db.close()

    # ── Event listeners ──────────────────────────────────────────────────

    def on_slot_freed(self, event: SlotEvent) -> None:
        self._offer_next(SlotKey.parse(event.slot_key))

    def on_slot_booked(self, event: SlotEvent) -> None:
        """
        The booking client leaves the queue. A lapsed offer is dropped with
        `waitlist-expired`; a live one is withdrawn and its client keeps
        their place.
        """
        slot_key = SlotKey.parse(event.slot_key)
        now = self.clock()
        db = self.session_factory()
        try:
            with store_guard():
                if event.client_id is not None:
                    db.execute(
                        delete(WaitlistEntries).where(
                            WaitlistEntries.slot_key == event.slot_key,
                            WaitlistEntries.client_id == event.client_id,
                        )
                    )
                lapsed = [
                    row.client_id
                    for row in db.query(WaitlistEntries)
                    .filter(
                        WaitlistEntries.slot_key == event.slot_key,
                        WaitlistEntries.offer_expires_at <= now,
                    )
                    .all()
                ]
                db.execute(
                    delete(WaitlistEntries).where(
                        WaitlistEntries.slot_key == event.slot_key,
                        WaitlistEntries.offer_expires_at <= now,
                    )
                )
                db.execute(
                    update(WaitlistEntries)
                    .where(
                        WaitlistEntries.slot_key == event.slot_key,
                        WaitlistEntries.offer_expires_at.is_not(None),
                    )
                    .values(offer_expires_at=None)
                )
                db.commit()
        finally:
            db.close()

        for client_id in lapsed:
            logger.info(f"Waitlist offer expired: {event.slot_key} client={client_id}")
            self.broadcaster.publish(
                slot_key.provider_id,
                EVENT_WAITLIST_EXPIRED,
                slot_key,
                client_id=client_id,
            )

    # ── Sweep ────────────────────────────────────────────────────────────

    def expire_offers(self) -> int:
        """Drop lapsed offers, emit `waitlist-expired`, offer the next waiter."""
        now = self.clock()
        db = self.session_factory()
        try:
            with store_guard():
                lapsed = [
                    WaitlistEntry.from_row(row)
                    for row in db.query(WaitlistEntries)
                    .filter(WaitlistEntries.offer_expires_at <= now)
                    .order_by(WaitlistEntries.offer_expires_at, WaitlistEntries.id)
                    .all()
                ]
        finally:
            db.close()

        expired = 0
        for entry in lapsed:
            slot_key = SlotKey.parse(entry.slot_key)
            with self.mutexes.hold(slot_key.lock_name):
                db = self.session_factory()
                try:
                    with store_guard():
                        result = db.execute(
                            delete(WaitlistEntries).where(
                                WaitlistEntries.id == entry.id,
                                WaitlistEntries.offer_expires_at <= self.clock(),
                            )
                        )
                        deleted = result.rowcount
                        db.commit()
                finally:
                    db.close()

                if not deleted:
                    continue

                expired += 1
                self.holds.clear_reservation(slot_key, entry.client_id)
                logger.info(f"Waitlist offer expired: {entry.slot_key} client={entry.client_id}")
                self.broadcaster.publish(
                    slot_key.provider_id,
                    EVENT_WAITLIST_EXPIRED,
                    slot_key,
                    client_id=entry.client_id,
                )
                self._offer_next(slot_key)
        return expired

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _find(db, key: str, client_id: str) -> WaitlistEntries | None:
        return (
            db.query(WaitlistEntries)
            .filter(WaitlistEntries.slot_key == key, WaitlistEntries.client_id == client_id)
            .first()
        )

    def _offer_next(self, slot_key: SlotKey) -> WaitlistEntry | None:
        """
        Offer a free slot to the earliest waiting client.

        Does nothing while another offer is open or the slot is held/booked.
        """
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    open_offer = (
                        db.query(WaitlistEntries)
                        .filter(
                            WaitlistEntries.slot_key == key,
                            WaitlistEntries.offer_expires_at > now,
                        )
                        .first()
                    )
                    if open_offer:
                        return None

                    row = (
                        db.query(WaitlistEntries)
                        .filter(
                            WaitlistEntries.slot_key == key,
                            WaitlistEntries.offer_expires_at.is_(None),
                        )
                        .order_by(WaitlistEntries.requested_at, WaitlistEntries.id)
                        .first()
                    )
                    if row is None:
                        return None

                    if find_overlapping_booking(db, slot_key, config=self.config):
                        return None
                    if validate_slot(db, slot_key, self.config, now):
                        return None
            finally:
                db.close()

            expires_at = now + self.claim_window
            if self.holds.reserve_for_offer(slot_key, row.client_id, expires_at) is None:
                # Someone holds the slot; their release will trigger us again
                return None

            db = self.session_factory()
            try:
                with store_guard():
                    result = db.execute(
                        update(WaitlistEntries)
                        .where(
                            WaitlistEntries.id == row.id,
                            WaitlistEntries.offer_expires_at.is_(None),
                        )
                        .values(offer_expires_at=expires_at)
                    )
                    updated = result.rowcount
                    db.commit()
            finally:
                db.close()

            if not updated:
                # Entry withdrawn between reads
                self.holds.clear_reservation(slot_key, row.client_id)
                return None

            logger.info(f"Waitlist offer: {key} client={row.client_id} until {expires_at}")
            self.broadcaster.publish(
                slot_key.provider_id,
                EVENT_WAITLIST_OFFERED,
                slot_key,
                client_id=row.client_id,
                payload={"offer_expires_at": expires_at.isoformat()},
            )

            return replace(WaitlistEntry.from_row(row), offer_expires_at=expires_at)
