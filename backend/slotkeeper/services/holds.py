"""
Slot Lock Manager.

Short-lived exclusive holds on a slot while a client completes checkout.
A hold is a `slot_holds` row keyed by slot_key with an absolute
`expires_at`. Acquisition is a single conditional UPDATE whose predicate
only matches an expired hold, the caller's own hold, or a hold reserved for
the caller by a waitlist offer; when no row exists the INSERT is guarded by
the primary key. Expired rows never block: they are overwritten on access
and removed by the sweeper.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import Ack, Conflict, ConflictReason, NotFound, Unavailable, store_guard
from ..models.generated import SlotHolds
from ..utils.clock import utcnow
from .events import EVENT_LOCKED, EVENT_RELEASED, Broadcaster
from .slot_mutex import SlotMutexRegistry
from .slots.availability import find_overlapping_booking
from .slots.calculator import validate_slot
from .slots.config import BookingConfig, get_booking_config
from .slots.keys import SlotKey

logger = logging.getLogger(__name__)

WAITLIST_HOLDER_PREFIX = "waitlist:"


@dataclass(frozen=True)
class Hold:
    slot_key: SlotKey
    holder_session_id: str
    expires_at: datetime
    version: int
    holder_client_id: str | None = None
    reserved_for: str | None = None

    @classmethod
    def from_row(cls, row: SlotHolds) -> "Hold":
        return cls(
            slot_key=SlotKey.parse(row.slot_key),
            holder_session_id=row.holder_session_id,
            expires_at=row.expires_at,
            version=row.version,
            holder_client_id=row.holder_client_id,
            reserved_for=row.reserved_for,
        )


def waitlist_holder(client_id: str) -> str:
    return f"{WAITLIST_HOLDER_PREFIX}{client_id}"


class SlotLockManager:
    def __init__(
        self,
        session_factory,
        mutexes: SlotMutexRegistry,
        broadcaster: Broadcaster,
        config: BookingConfig | None = None,
        hold_ttl_seconds: int = 300,
        max_hold_ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.mutexes = mutexes
        self.broadcaster = broadcaster
        self.config = config or get_booking_config()
        self.hold_ttl_seconds = hold_ttl_seconds
        self.max_hold_ttl_seconds = max_hold_ttl_seconds
        self.clock = clock

    def _ttl(self, ttl_seconds: int | None) -> timedelta:
        ttl = self.hold_ttl_seconds if ttl_seconds is None else ttl_seconds
        return timedelta(seconds=max(1, min(ttl, self.max_hold_ttl_seconds)))

    # ── Acquire ──────────────────────────────────────────────────────────

    def acquire_hold(
        self,
        slot_key: SlotKey,
        session_id: str,
        ttl_seconds: int | None = None,
        client_id: str | None = None,
    ) -> Hold | Conflict | Unavailable:
        """
        Take or re-issue the hold on a slot.

        Same session → re-issue with a fresh expiry (idempotent).
        Live hold of another session → Conflict(LockedByOther).
        Slot already booked → Conflict(AlreadyBooked).
        """
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    unavailable = validate_slot(db, slot_key, self.config, now)
                    if unavailable:
                        return unavailable

                    if find_overlapping_booking(db, slot_key, config=self.config):
                        return Conflict(ConflictReason.ALREADY_BOOKED, f"Slot {key} is already booked")

                    if self._overlapping_hold(db, slot_key, session_id, client_id, now):
                        return Conflict(ConflictReason.LOCKED_BY_OTHER, f"Slot {key} is held by another session")

                    existing = db.get(SlotHolds, key)
                    reissue = (
                        existing is not None
                        and existing.holder_session_id == session_id
                        and existing.expires_at > now
                    )

                    expires_at = now + self._ttl(ttl_seconds)
                    if (
                        existing is not None
                        and client_id is not None
                        and existing.reserved_for == client_id
                        and existing.expires_at > expires_at
                    ):
                        # Claiming a waitlist offer never shortens the claim window
                        expires_at = existing.expires_at

                    if existing is None:
                        db.add(SlotHolds(
                            slot_key=key,
                            provider_id=slot_key.provider_id,
                            start_at=slot_key.start,
                            duration_minutes=slot_key.duration_minutes,
                            holder_session_id=session_id,
                            holder_client_id=client_id,
                            expires_at=expires_at,
                            version=1,
                            created_at=now,
                        ))
                        try:
                            db.commit()
                        except IntegrityError:
                            db.rollback()
                            logger.warning(f"Hold insert lost race: {key}")
                            return Conflict(ConflictReason.LOCKED_BY_OTHER, f"Slot {key} is held by another session")
                    else:
                        claim = [
                            SlotHolds.expires_at <= now,
                            SlotHolds.holder_session_id == session_id,
                        ]
                        if client_id is not None:
                            claim.append(SlotHolds.reserved_for == client_id)
                        # A taken-over hold keeps its reservation only for the offered client
                        reserved_for = existing.reserved_for if existing.reserved_for == client_id else None

                        result = db.execute(
                            update(SlotHolds)
                            .where(SlotHolds.slot_key == key, or_(*claim))
                            .values(
                                holder_session_id=session_id,
                                holder_client_id=client_id,
                                expires_at=expires_at,
                                reserved_for=reserved_for,
                                version=SlotHolds.version + 1,
                                created_at=now,
                            )
                        )
                        if result.rowcount == 0:
                            db.rollback()
                            logger.warning(f"Hold conflict: {key} session={session_id}")
                            return Conflict(ConflictReason.LOCKED_BY_OTHER, f"Slot {key} is held by another session")
                        db.commit()

                    row = db.get(SlotHolds, key)
                    db.refresh(row)
                    hold = Hold.from_row(row)
            finally:
                db.close()

            if reissue:
                logger.info(f"Hold re-issued: {key} session={session_id} until {hold.expires_at}")
            else:
                logger.info(f"Hold acquired: {key} session={session_id} until {hold.expires_at}")
                self.broadcaster.publish(
                    slot_key.provider_id,
                    EVENT_LOCKED,
                    slot_key,
                    payload={"expires_at": hold.expires_at.isoformat()},
                )
            return hold

    # ── Release / extend ─────────────────────────────────────────────────

    def release_hold(self, slot_key: SlotKey, session_id: str) -> Ack:
        """Drop the caller's hold. Releasing a hold you don't own is a no-op."""
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    result = db.execute(
                        delete(SlotHolds).where(
                            SlotHolds.slot_key == key,
                            SlotHolds.holder_session_id == session_id,
                            SlotHolds.expires_at > now,
                        )
                    )
                    released = result.rowcount
                    db.commit()
            finally:
                db.close()

            if not released:
                return Ack("not held")

            logger.info(f"Hold released: {key} session={session_id}")
            self.broadcaster.publish(
                slot_key.provider_id, EVENT_RELEASED, slot_key, payload={"reason": "released"}
            )
            return Ack("released")

    def extend_hold(
        self,
        slot_key: SlotKey,
        session_id: str,
        ttl_seconds: int | None = None,
    ) -> Hold | Conflict | NotFound:
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    result = db.execute(
                        update(SlotHolds)
                        .where(
                            SlotHolds.slot_key == key,
                            SlotHolds.holder_session_id == session_id,
                            SlotHolds.expires_at > now,
                        )
                        .values(
                            expires_at=now + self._ttl(ttl_seconds),
                            version=SlotHolds.version + 1,
                        )
                    )
                    if result.rowcount == 0:
                        db.rollback()
                        live = self._live_row(db, key, now)
                        if live is not None:
                            return Conflict(ConflictReason.LOCKED_BY_OTHER, f"Slot {key} is held by another session")
                        return NotFound("hold", key)
                    db.commit()
                    hold = Hold.from_row(db.get(SlotHolds, key))
            finally:
                db.close()

        logger.info(f"Hold extended: {key} session={session_id} until {hold.expires_at}")
        return hold

    # ── Read ─────────────────────────────────────────────────────────────

    def get_hold(self, slot_key: SlotKey) -> Hold | None:
        """Live hold on the slot, if any (expired rows read as absent)."""
        db = self.session_factory()
        try:
            with store_guard():
                row = self._live_row(db, slot_key.encode(), self.clock())
                return Hold.from_row(row) if row else None
        finally:
            db.close()

    # ── Waitlist reservations ────────────────────────────────────────────

    def reserve_for_offer(
        self,
        slot_key: SlotKey,
        client_id: str,
        expires_at: datetime,
    ) -> Hold | None:
        """
        Keep a free slot for an offered waitlist client until `expires_at`.

        Only the offered client (by client_id) can take the hold over.
        Returns None when the slot is live-held by someone else.
        """
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            now = self.clock()
            db = self.session_factory()
            try:
                with store_guard():
                    values = dict(
                        holder_session_id=waitlist_holder(client_id),
                        holder_client_id=None,
                        reserved_for=client_id,
                        expires_at=expires_at,
                        created_at=now,
                    )
                    if db.get(SlotHolds, key) is None:
                        db.add(SlotHolds(
                            slot_key=key,
                            provider_id=slot_key.provider_id,
                            start_at=slot_key.start,
                            duration_minutes=slot_key.duration_minutes,
                            version=1,
                            **values,
                        ))
                        try:
                            db.commit()
                        except IntegrityError:
                            db.rollback()
                            return None
                    else:
                        result = db.execute(
                            update(SlotHolds)
                            .where(SlotHolds.slot_key == key, SlotHolds.expires_at <= now)
                            .values(version=SlotHolds.version + 1, **values)
                        )
                        if result.rowcount == 0:
                            db.rollback()
                            return None
                        db.commit()
                    row = db.get(SlotHolds, key)
                    db.refresh(row)
                    return Hold.from_row(row)
            finally:
                db.close()

    def clear_reservation(self, slot_key: SlotKey, client_id: str) -> bool:
        """Drop an unclaimed waitlist reservation. Returns True if one was removed."""
        key = slot_key.encode()

        with self.mutexes.hold(slot_key.lock_name):
            db = self.session_factory()
            try:
                with store_guard():
                    result = db.execute(
                        delete(SlotHolds).where(
                            SlotHolds.slot_key == key,
                            SlotHolds.holder_session_id == waitlist_holder(client_id),
                        )
                    )
                    removed = result.rowcount
                    db.commit()
            finally:
                db.close()
        return removed > 0

    # ── Sweep ────────────────────────────────────────────────────────────

    def sweep_expired(self) -> int:
        """Delete expired holds and emit `released` for each. Returns count."""
        now = self.clock()
        db = self.session_factory()
        try:
            with store_guard():
                keys = [
                    row.slot_key
                    for row in db.query(SlotHolds.slot_key).filter(SlotHolds.expires_at <= now).all()
                ]
        finally:
            db.close()

        swept = 0
        for key in keys:
            slot_key = SlotKey.parse(key)
            with self.mutexes.hold(slot_key.lock_name):
                db = self.session_factory()
                try:
                    with store_guard():
                        # Re-check under the mutex: the hold may have been re-acquired
                        result = db.execute(
                            delete(SlotHolds).where(
                                SlotHolds.slot_key == key,
                                SlotHolds.expires_at <= self.clock(),
                            )
                        )
                        deleted = result.rowcount
                        db.commit()
                finally:
                    db.close()

                if deleted:
                    swept += 1
                    logger.info(f"Hold expired: {key}")
                    self.broadcaster.publish(
                        slot_key.provider_id, EVENT_RELEASED, slot_key, payload={"reason": "expired"}
                    )
        return swept

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _live_row(db, key: str, now: datetime) -> SlotHolds | None:
        return (
            db.query(SlotHolds)
            .filter(SlotHolds.slot_key == key, SlotHolds.expires_at > now)
            .first()
        )

    def _overlapping_hold(
        self,
        db,
        slot_key: SlotKey,
        session_id: str,
        client_id: str | None,
        now: datetime,
    ) -> SlotHolds | None:
        """Live hold of someone else on a different key overlapping this slot."""
        rows = (
            db.query(SlotHolds)
            .filter(
                SlotHolds.provider_id == slot_key.provider_id,
                SlotHolds.slot_key != slot_key.encode(),
                SlotHolds.start_at < slot_key.end,
                SlotHolds.start_at >= slot_key.start - timedelta(minutes=self.config.max_duration_minutes),
                SlotHolds.expires_at > now,
            )
            .all()
        )
        for row in rows:
            if row.holder_session_id == session_id:
                continue
            if client_id is not None and row.reserved_for == client_id:
                continue
            if slot_key.overlaps(row.start_at, row.start_at + timedelta(minutes=row.duration_minutes)):
                return row
        return None
