# backend/slotkeeper/errors.py
"""
Outcome types for reservation operations.

Expected contention (a slot taken by someone else, a stale version, a hold
that already expired) is a normal result and is *returned* as one of the
dataclasses below. Only infrastructure faults are raised, as
StoreUnavailable.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator

from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError


class ConflictReason(str, Enum):
    LOCKED_BY_OTHER = "LockedByOther"
    ALREADY_BOOKED = "AlreadyBooked"
    STALE_VERSION = "StaleVersion"


class UnavailableReason(str, Enum):
    OUTSIDE_SCHEDULE = "OutsideSchedule"
    BLOCKED = "Blocked"
    PAST_DEADLINE = "PastDeadline"


@dataclass(frozen=True)
class Ack:
    detail: str = "ok"
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Conflict:
    reason: ConflictReason
    detail: str = ""


@dataclass(frozen=True)
class Unavailable:
    reason: UnavailableReason
    detail: str = ""


@dataclass(frozen=True)
class TooLateToCancel:
    scheduled_at: datetime
    deadline: datetime


@dataclass(frozen=True)
class TooEarlyToComplete:
    scheduled_at: datetime


@dataclass(frozen=True)
class NotFound:
    entity: str
    key: str


@dataclass(frozen=True)
class InvalidTransition:
    current: str
    target: str


FAILURES = (
    Conflict,
    Unavailable,
    TooLateToCancel,
    TooEarlyToComplete,
    NotFound,
    InvalidTransition,
)


def is_failure(result) -> bool:
    return isinstance(result, FAILURES)


class StoreUnavailable(Exception):
    """Transient store fault. Safe to retry with backoff."""


class OperationTimeout(StoreUnavailable):
    """
    Bounded wait exceeded (per-slot mutex or store round trip).

    The outcome of the operation is unknown to the caller; it must re-read
    state and must never assume success.
    """


@contextmanager
def store_guard() -> Iterator[None]:
    """Translate driver-level faults into StoreUnavailable."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as e:
        raise StoreUnavailable(str(e)) from e
