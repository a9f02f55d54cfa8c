"""
Reservation Engine.

Turns a hold into a booking and drives the booking state machine:

    pending → confirmed → completed
    pending | confirmed → cancelled

cancelled / completed are terminal. Every transition is a compare-and-swap
on `version`; the insert is guarded by the partial unique index on
(provider_id, scheduled_at) over pending/confirmed rows. Events are
published after commit while the slot mutex is still held.
"""

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    Ack,
    Conflict,
    ConflictReason,
    InvalidTransition,
    NotFound,
    TooEarlyToComplete,
    TooLateToCancel,
    Unavailable,
    store_guard,
)
from ..models.generated import ACTIVE_BOOKING_STATUSES, Bookings, SlotHolds
from ..utils.clock import utcnow
from .events import EVENT_BOOKED, EVENT_FREED, Broadcaster
from .slot_mutex import SlotMutexRegistry
from .slots.availability import find_overlapping_booking
from .slots.calculator import validate_slot
from .slots.config import BookingConfig, get_booking_config
from .slots.keys import SlotKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingDetails:
    client_id: str
    notes: str | None = None
    # Payment pending: booking is created as `pending` and approved later
    await_payment: bool = False
    series_id: str | None = None


@dataclass(frozen=True)
class Booking:
    id: int
    provider_id: int
    client_id: str
    scheduled_at: datetime
    duration_minutes: int
    status: str
    version: int
    created_at: datetime
    updated_at: datetime
    notes: str | None = None
    series_id: str | None = None
    rescheduled_from_id: int | None = None
    cancelled_at: datetime | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None
    completed_at: datetime | None = None

    @property
    def slot_key(self) -> SlotKey:
        return SlotKey(self.provider_id, self.scheduled_at, self.duration_minutes)

    @classmethod
    def from_row(cls, row: Bookings) -> "Booking":
        return cls(
            id=row.id,
            provider_id=row.provider_id,
            client_id=row.client_id,
            scheduled_at=row.scheduled_at,
            duration_minutes=row.duration_minutes,
            status=row.status,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
            notes=row.notes,
            series_id=row.series_id,
            rescheduled_from_id=row.rescheduled_from_id,
            cancelled_at=row.cancelled_at,
            cancelled_by=row.cancelled_by,
            cancel_reason=row.cancel_reason,
            completed_at=row.completed_at,
        )


class ReservationEngine:
    def __init__(
        self,
        session_factory,
        mutexes: SlotMutexRegistry,
        broadcaster: Broadcaster,
        config: BookingConfig | None = None,
        cancellation_window_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.mutexes = mutexes
        self.broadcaster = broadcaster
        self.config = config or get_booking_config()
        self.cancellation_window = timedelta(hours=cancellation_window_hours)
        self.clock = clock

    # ── Confirm ──────────────────────────────────────────────────────────

    def confirm(
        self,
        slot_key: SlotKey,
        session_id: str,
        details: BookingDetails,
    ) -> Booking | Conflict | Unavailable | NotFound:
        """
        Promote the caller's live hold to a booking.

        The hold is deleted in the same transaction as the insert. A lost
        race on the unique index returns Conflict(AlreadyBooked).
        """
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    hold = db.get(SlotHolds, key)
                    live = hold is not None and hold.expires_at > now

                    if not live or hold.holder_session_id != session_id:
                        if find_overlapping_booking(db, slot_key, config=self.config):
                            return Conflict(ConflictReason.ALREADY_BOOKED, f"Slot {key} is already booked")
                        if live:
                            return Conflict(ConflictReason.LOCKED_BY_OTHER, f"Slot {key} is held by another session")
                        return NotFound("hold", key)

                    unavailable = validate_slot(db, slot_key, self.config, now)
                    if unavailable:
                        return unavailable

                    if find_overlapping_booking(db, slot_key, config=self.config):
                        return Conflict(ConflictReason.ALREADY_BOOKED, f"Slot {key} is already booked")

                    row = Bookings(
                        provider_id=slot_key.provider_id,
                        client_id=details.client_id,
                        scheduled_at=slot_key.start,
                        duration_minutes=slot_key.duration_minutes,
                        status="pending" if details.await_payment else "confirmed",
                        version=1,
                        notes=details.notes,
                        series_id=details.series_id,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(row)
                    db.execute(
                        delete(SlotHolds).where(
                            SlotHolds.slot_key == key,
                            SlotHolds.holder_session_id == session_id,
                        )
                    )
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        logger.warning(f"Confirm lost race: {key} client={details.client_id}")
                        return Conflict(ConflictReason.ALREADY_BOOKED, f"Slot {key} is already booked")

                    booking = Booking.from_row(row)
            finally:
                db.close()

            logger.info(
                f"Booking created: id={booking.id} slot={key} "
                f"client={booking.client_id} status={booking.status}"
            )
            self._publish_booked(booking)
            return booking

    # ── Cancel ───────────────────────────────────────────────────────────

    def cancel(
        self,
        booking_id: int,
        actor_id: str,
        expected_version: int | None = None,
        override: bool = False,
        reason: str | None = None,
    ) -> Ack | Conflict | TooLateToCancel | InvalidTransition | NotFound:
        """
        Cancel a pending/confirmed booking.

        Allowed up to `cancellation_window` before the start; later only
        with administrative override. Cancelling inside the allowed window
        makes the booking refund-eligible. Emits `freed` after commit.
        """
        current = self.get_booking(booking_id)
        if isinstance(current, NotFound):
            return current
        if not override and current.client_id != actor_id:
            return NotFound("booking", str(booking_id))

        with self.mutexes.hold(current.slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    row = db.get(Bookings, booking_id)
                    check = self._check_transition(booking_id, row, "cancelled", expected_version)
                    if check:
                        return check

                    deadline = row.scheduled_at - self.cancellation_window
                    if now > deadline and not override:
                        return TooLateToCancel(row.scheduled_at, deadline)
                    refund_eligible = now <= deadline

                    result = db.execute(
                        update(Bookings)
                        .where(
                            Bookings.id == booking_id,
                            Bookings.version == row.version,
                            Bookings.status.in_(ACTIVE_BOOKING_STATUSES),
                        )
                        .values(
                            status="cancelled",
                            version=Bookings.version + 1,
                            cancelled_at=now,
                            cancelled_by=actor_id,
                            cancel_reason=reason,
                            updated_at=now,
                        )
                    )
                    if result.rowcount == 0:
                        db.rollback()
                        return Conflict(ConflictReason.STALE_VERSION, f"Booking {booking_id} changed concurrently")
                    db.commit()
                    db.refresh(row)
                    booking = Booking.from_row(row)
            finally:
                db.close()

            logger.info(
                f"Booking cancelled: id={booking_id} by={actor_id} "
                f"override={override} refund_eligible={refund_eligible}"
            )
            self._publish_freed(booking)
            return Ack("cancelled", {"booking": booking, "refund_eligible": refund_eligible})

    # ── Complete / approve ───────────────────────────────────────────────

    def complete(
        self,
        booking_id: int,
        expected_version: int | None = None,
    ) -> Ack | Conflict | TooEarlyToComplete | InvalidTransition | NotFound:
        """confirmed → completed, only once scheduled_at has passed."""
        return self._advance(booking_id, "completed", expected_version)

    def approve(
        self,
        booking_id: int,
        expected_version: int | None = None,
    ) -> Ack | Conflict | InvalidTransition | NotFound:
        """pending → confirmed (payment received)."""
        return self._advance(booking_id, "confirmed", expected_version)

    def _advance(self, booking_id: int, target: str, expected_version: int | None):
        current = self.get_booking(booking_id)
        if isinstance(current, NotFound):
            return current

        with self.mutexes.hold(current.slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    row = db.get(Bookings, booking_id)
                    check = self._check_transition(booking_id, row, target, expected_version)
                    if check:
                        return check

                    values = {"status": target, "version": Bookings.version + 1, "updated_at": now}
                    if target == "completed":
                        if now < row.scheduled_at:
                            return TooEarlyToComplete(row.scheduled_at)
                        values["completed_at"] = now

                    result = db.execute(
                        update(Bookings)
                        .where(
                            Bookings.id == booking_id,
                            Bookings.version == row.version,
                            Bookings.status == row.status,
                        )
                        .values(**values)
                    )
                    if result.rowcount == 0:
                        db.rollback()
                        return Conflict(ConflictReason.STALE_VERSION, f"Booking {booking_id} changed concurrently")
                    db.commit()
                    db.refresh(row)
                    booking = Booking.from_row(row)
            finally:
                db.close()

        logger.info(f"Booking {target}: id={booking_id} version={booking.version}")
        return Ack(target, {"booking": booking})

    # ── Reschedule ───────────────────────────────────────────────────────

    def reschedule(
        self,
        booking_id: int,
        new_slot_key: SlotKey,
        session_id: str,
        actor_id: str,
        expected_version: int | None = None,
        override: bool = False,
    ) -> Booking | Conflict | Unavailable | TooLateToCancel | InvalidTransition | NotFound:
        """
        Move a booking to a slot the caller holds.

        The old booking is cancelled and the new one inserted in a single
        transaction, under both slot mutexes. Same window rule as cancel.
        Emits `freed` for the old slot then `booked` for the new one.
        """
        current = self.get_booking(booking_id)
        if isinstance(current, NotFound):
            return current
        if not override and current.client_id != actor_id:
            return NotFound("booking", str(booking_id))

        old_key = current.slot_key
        new_key = new_slot_key.encode()

        with ExitStack() as stack:
            # Fixed order so two reschedules crossing the same slots can't deadlock
            for name in sorted({old_key.lock_name, new_slot_key.lock_name}):
                stack.enter_context(self.mutexes.hold(name))

            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    row = db.get(Bookings, booking_id)
                    check = self._check_transition(booking_id, row, "cancelled", expected_version)
                    if check:
                        return check

                    deadline = row.scheduled_at - self.cancellation_window
                    if now > deadline and not override:
                        return TooLateToCancel(row.scheduled_at, deadline)

                    hold = db.get(SlotHolds, new_key)
                    if hold is None or hold.expires_at <= now or hold.holder_session_id != session_id:
                        return NotFound("hold", new_key)

                    unavailable = validate_slot(db, new_slot_key, self.config, now)
                    if unavailable:
                        return unavailable

                    if find_overlapping_booking(
                        db, new_slot_key, exclude_booking_id=booking_id, config=self.config
                    ):
                        return Conflict(ConflictReason.ALREADY_BOOKED, f"Slot {new_key} is already booked")

                    result = db.execute(
                        update(Bookings)
                        .where(
                            Bookings.id == booking_id,
                            Bookings.version == row.version,
                            Bookings.status.in_(ACTIVE_BOOKING_STATUSES),
                        )
                        .values(
                            status="cancelled",
                            version=Bookings.version + 1,
                            cancelled_at=now,
                            cancelled_by=actor_id,
                            cancel_reason="rescheduled",
                            updated_at=now,
                        )
                    )
                    if result.rowcount == 0:
                        db.rollback()
                        return Conflict(ConflictReason.STALE_VERSION, f"Booking {booking_id} changed concurrently")

                    new_row = Bookings(
                        provider_id=new_slot_key.provider_id,
                        client_id=row.client_id,
                        scheduled_at=new_slot_key.start,
                        duration_minutes=new_slot_key.duration_minutes,
                        status=row.status,
                        version=1,
                        notes=row.notes,
                        series_id=row.series_id,
                        rescheduled_from_id=booking_id,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(new_row)
                    db.execute(
                        delete(SlotHolds).where(
                            SlotHolds.slot_key == new_key,
                            SlotHolds.holder_session_id == session_id,
                        )
                    )
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        logger.warning(f"Reschedule lost race: {new_key} booking={booking_id}")
                        return Conflict(ConflictReason.ALREADY_BOOKED, f"Slot {new_key} is already booked")

                    db.refresh(row)
                    old_booking = Booking.from_row(row)
                    booking = Booking.from_row(new_row)
            finally:
                db.close()

            logger.info(f"Booking rescheduled: id={booking_id} → id={booking.id} slot={new_key}")
            self._publish_freed(old_booking)
            self._publish_booked(booking)
            return booking

    # ── Read ─────────────────────────────────────────────────────────────

    def get_booking(self, booking_id: int) -> Booking | NotFound:
        db = self.session_factory()
        try:
            with store_guard():
                row = db.get(Bookings, booking_id)
                if row is None:
                    return NotFound("booking", str(booking_id))
                return Booking.from_row(row)
        finally:
            db.close()

    def list_bookings(
        self,
        client_id: str | None = None,
        provider_id: int | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Booking]:
        db = self.session_factory()
        try:
            with store_guard():
                query = db.query(Bookings)
                if client_id is not None:
                    query = query.filter(Bookings.client_id == client_id)
                if provider_id is not None:
                    query = query.filter(Bookings.provider_id == provider_id)
                if status is not None:
                    query = query.filter(Bookings.status == status)
                rows = (
                    query.order_by(Bookings.scheduled_at, Bookings.id)
                    .offset(offset)
                    .limit(limit)
                    .all()
                )
                return [Booking.from_row(row) for row in rows]
        finally:
            db.close()

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _check_transition(booking_id: int, row, target: str, expected_version: int | None):
        if row is None:
            return NotFound("booking", str(booking_id))

        allowed = {
            "confirmed": ("pending",),
            "completed": ("confirmed",),
            "cancelled": ACTIVE_BOOKING_STATUSES,
        }
        if row.status not in allowed[target]:
            return InvalidTransition(row.status, target)

        if expected_version is not None and row.version != expected_version:
            return Conflict(
                ConflictReason.STALE_VERSION,
                f"Booking {row.id} is at version {row.version}, expected {expected_version}",
            )
        return None

    def _publish_booked(self, booking: Booking) -> None:
        self.broadcaster.publish(
            booking.provider_id,
            EVENT_BOOKED,
            booking.slot_key,
            client_id=booking.client_id,
            payload={"booking_id": booking.id, "status": booking.status},
        )

    def _publish_freed(self, booking: Booking) -> None:
        self.broadcaster.publish(
            booking.provider_id,
            EVENT_FREED,
            booking.slot_key,
            payload={"booking_id": booking.id},
        )
