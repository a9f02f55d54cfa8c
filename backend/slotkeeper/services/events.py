"""
backend/slotkeeper/services/events.py

Realtime broadcaster: slot-state events per provider.

Every event is
- persisted to `slot_events` with a per-provider monotonically increasing
  sequence (catch-up / gap healing reads from here),
- fanned out to in-process subscribers (SSE streams),
- PUBLISHed to Redis channel `slots:events:{provider_id}` when Redis is
  configured (best effort, failures are logged).

Internal listeners (waitlist promotion) are called after fan-out.
"""

import json
import logging
import queue
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Callable, Iterator
from zoneinfo import ZoneInfo

from redis import Redis
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import StoreUnavailable, store_guard
from ..models.generated import SlotEvents
from ..utils.clock import utc_to_local, utcnow
from .slots.keys import SlotKey

logger = logging.getLogger(__name__)

EVENT_LOCKED = "locked"
EVENT_RELEASED = "released"
EVENT_BOOKED = "booked"
EVENT_FREED = "freed"
EVENT_WAITLIST_OFFERED = "waitlist-offered"
EVENT_WAITLIST_EXPIRED = "waitlist-expired"

EVENT_TYPES = (
    EVENT_LOCKED,
    EVENT_RELEASED,
    EVENT_BOOKED,
    EVENT_FREED,
    EVENT_WAITLIST_OFFERED,
    EVENT_WAITLIST_EXPIRED,
)

CHANNEL_PREFIX = "slots:events"
SEQUENCE_RETRIES = 5
STREAM_BUFFER = 1000


@dataclass(frozen=True)
class SlotEvent:
    provider_id: int
    sequence: int
    event_type: str
    slot_key: str
    start_at: datetime
    created_at: datetime
    # Set when the event is addressed to a single client (waitlist offers)
    client_id: str | None = None
    payload: dict = field(default_factory=dict)

    def redacted(self) -> "SlotEvent":
        return replace(self, client_id=None)

    def to_dict(self) -> dict:
        return {
            "provider_id": self.provider_id,
            "sequence": self.sequence,
            "type": self.event_type,
            "slot_key": self.slot_key,
            "start_at": self.start_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "client_id": self.client_id,
            "payload": self.payload,
        }

    @classmethod
    def from_row(cls, row: SlotEvents) -> "SlotEvent":
        try:
            payload = json.loads(row.payload) if row.payload else {}
        except json.JSONDecodeError:
            payload = {}
        return cls(
            provider_id=row.provider_id,
            sequence=row.sequence,
            event_type=row.event_type,
            slot_key=row.slot_key,
            start_at=row.start_at,
            created_at=row.created_at,
            client_id=row.client_id,
            payload=payload,
        )


class EventStream:
    """
    One subscriber's view of a provider channel.

    Events up to `start_sequence` predate the subscription and come from
    replay. Events outside the date range are skipped but still advance
    `last_sequence`, so a jump in sequence seen by the producer means
    events were lost (buffer overflow) and `gap_detected` is set. The
    consumer should then re-fetch via replay.
    """

    def __init__(
        self,
        provider_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        tz: ZoneInfo | None = None,
        client_id: str | None = None,
        last_sequence: int = 0,
        maxsize: int = STREAM_BUFFER,
    ):
        self.provider_id = provider_id
        self.start_date = start_date
        self.end_date = end_date
        self.tz = tz or ZoneInfo("UTC")
        self.client_id = client_id
        # Sequence at subscribe time; later events arrive live
        self.start_sequence = last_sequence
        self.last_sequence = last_sequence
        self.gap_detected = False
        self.closed = False
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def matches(self, event: SlotEvent) -> bool:
        local_date = utc_to_local(event.start_at, self.tz).date()
        if self.start_date and local_date < self.start_date:
            return False
        if self.end_date and local_date > self.end_date:
            return False
        return True

    def offer(self, event: SlotEvent) -> None:
        """Producer side. Called under the provider's publish lock."""
        if self.closed or event.sequence <= self.last_sequence:
            return
        if event.sequence != self.last_sequence + 1:
            self.gap_detected = True
        self.last_sequence = event.sequence

        if not self.matches(event):
            return
        if event.client_id is not None and event.client_id != self.client_id:
            event = event.redacted()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.gap_detected = True
            logger.warning(
                f"Event stream overflow: provider={self.provider_id} seq={event.sequence}"
            )

    def get(self, timeout: float | None = None) -> SlotEvent | None:
        """Next event, or None on timeout / close."""
        if self.closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[SlotEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self.closed = True


class _ProviderLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class Broadcaster:
    def __init__(
        self,
        session_factory,
        redis: Redis | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.clock = clock
        self._guard = threading.Lock()
        self._provider_locks: dict[int, _ProviderLock] = {}
        self._streams: dict[int, list[EventStream]] = {}
        self._listeners: dict[str, list[Callable[[SlotEvent], None]]] = {}

    # ── Subscriptions ────────────────────────────────────────────────────

    def add_listener(self, event_type: str, callback: Callable[[SlotEvent], None]) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._listeners.setdefault(event_type, []).append(callback)

    def subscribe(
        self,
        provider_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        tz: ZoneInfo | None = None,
        client_id: str | None = None,
    ) -> EventStream:
        """
        Open a live stream for provider events in [start_date, end_date]
        (provider-local dates of the slot start).
        """
        with self._provider_lock(provider_id):
            stream = EventStream(
                provider_id,
                start_date,
                end_date,
                tz,
                client_id,
                last_sequence=self.current_sequence(provider_id),
            )
            with self._guard:
                self._streams.setdefault(provider_id, []).append(stream)
        logger.info(f"Subscribed: provider={provider_id} from seq={stream.last_sequence}")
        return stream

    def unsubscribe(self, stream: EventStream) -> None:
        stream.close()
        with self._guard:
            streams = self._streams.get(stream.provider_id, [])
            if stream in streams:
                streams.remove(stream)
            if not streams:
                self._streams.pop(stream.provider_id, None)

    def subscriber_count(self, provider_id: int) -> int:
        with self._guard:
            return len(self._streams.get(provider_id, []))

    # ── Publish ──────────────────────────────────────────────────────────

    def publish(
        self,
        provider_id: int,
        event_type: str,
        slot_key: SlotKey,
        client_id: str | None = None,
        payload: dict | None = None,
    ) -> SlotEvent:
        """
        Persist, fan out and forward one event.

        Callers publish after their store transaction commits, while still
        holding the slot mutex, so events for one slot are sequenced in the
        order their state changes happened.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        with self._provider_lock(provider_id):
            event = self._persist(provider_id, event_type, slot_key, client_id, payload or {})
            with self._guard:
                streams = list(self._streams.get(provider_id, []))
            for stream in streams:
                stream.offer(event)
            self._forward(event)

        logger.info(
            f"Event published: {event_type} slot={event.slot_key} seq={event.sequence}"
        )

        for callback in self._listeners.get(event_type, []):
            try:
                callback(event)
            except StoreUnavailable:
                logger.exception(f"Listener for {event_type} hit a store fault")
            except Exception:
                logger.exception(f"Listener for {event_type} failed")
        return event

    # ── Replay ───────────────────────────────────────────────────────────

    def replay(
        self,
        provider_id: int,
        since: int = 0,
        limit: int = 500,
        client_id: str | None = None,
    ) -> list[SlotEvent]:
        """Persisted events with sequence > since, oldest first."""
        db = self.session_factory()
        try:
            with store_guard():
                rows = (
                    db.query(SlotEvents)
                    .filter(
                        SlotEvents.provider_id == provider_id,
                        SlotEvents.sequence > since,
                    )
                    .order_by(SlotEvents.sequence)
                    .limit(limit)
                    .all()
                )
        finally:
            db.close()

        events = []
        for row in rows:
            event = SlotEvent.from_row(row)
            if event.client_id is not None and event.client_id != client_id:
                event = event.redacted()
            events.append(event)
        return events

    def current_sequence(self, provider_id: int) -> int:
        db = self.session_factory()
        try:
            with store_guard():
                return self._max_sequence(db, provider_id)
        finally:
            db.close()

    # ── Internals ────────────────────────────────────────────────────────

    @contextmanager
    def _provider_lock(self, provider_id: int) -> Iterator[None]:
        """Serialize sequencing for one provider. Dropped when the last user leaves."""
        with self._guard:
            entry = self._provider_locks.get(provider_id)
            if entry is None:
                entry = self._provider_locks[provider_id] = _ProviderLock()
            entry.users += 1

        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._provider_locks.pop(provider_id, None)

    @staticmethod
    def _max_sequence(db, provider_id: int) -> int:
        value = (
            db.query(func.max(SlotEvents.sequence))
            .filter(SlotEvents.provider_id == provider_id)
            .scalar()
        )
        return value or 0

    def _persist(
        self,
        provider_id: int,
        event_type: str,
        slot_key: SlotKey,
        client_id: str | None,
        payload: dict,
    ) -> SlotEvent:
        db = self.session_factory()
        try:
            with store_guard():
                for _ in range(SEQUENCE_RETRIES):
                    sequence = self._max_sequence(db, provider_id) + 1
                    row = SlotEvents(
                        provider_id=provider_id,
                        sequence=sequence,
                        event_type=event_type,
                        slot_key=slot_key.encode(),
                        start_at=slot_key.start,
                        created_at=self.clock(),
                        client_id=client_id,
                        payload=json.dumps(payload),
                    )
                    db.add(row)
                    try:
                        db.commit()
                    except IntegrityError:
                        # Another process took this sequence
                        db.rollback()
                        continue
                    return SlotEvent.from_row(row)
        finally:
            db.close()

        raise StoreUnavailable(f"Could not allocate event sequence for provider {provider_id}")

    def _forward(self, event: SlotEvent) -> None:
        if self.redis is None:
            return
        channel = f"{CHANNEL_PREFIX}:{event.provider_id}"
        try:
            self.redis.publish(channel, json.dumps(event.to_dict()))
        except Exception as e:
            logger.error(f"Failed to publish event {event.event_type} to {channel}: {e}")
