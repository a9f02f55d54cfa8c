# backend/slotkeeper/services/slots/keys.py
"""
Slot identity.

A slot is (provider_id, start, duration_minutes) with `start` in naive UTC.
Encoded form: "{provider_id}:{YYYYMMDDTHHMM}:{duration}", e.g.
"7:20260414T0900:30". No colons inside the timestamp so the key splits
cleanly and is safe in URL paths.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

_START_FORMAT = "%Y%m%dT%H%M"


@dataclass(frozen=True, order=True)
class SlotKey:
    provider_id: int
    start: datetime
    duration_minutes: int

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def lock_name(self) -> str:
        """
        Serialization point for this slot.

        Keys with different durations but the same start compete for the
        same (provider_id, scheduled_at) uniqueness, so they share a mutex.
        """
        return f"{self.provider_id}:{self.start.strftime(_START_FORMAT)}"

    def encode(self) -> str:
        return f"{self.provider_id}:{self.start.strftime(_START_FORMAT)}:{self.duration_minutes}"

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    @classmethod
    def parse(cls, raw: str) -> "SlotKey":
        parts = raw.split(":")
        if len(parts) != 3:
            raise ValueError(f"Invalid slot key: {raw!r}")
        provider_id, start, duration = parts
        try:
            return cls(
                provider_id=int(provider_id),
                start=datetime.strptime(start, _START_FORMAT),
                duration_minutes=int(duration),
            )
        except ValueError as e:
            raise ValueError(f"Invalid slot key: {raw!r}") from e

    def __str__(self) -> str:
        return self.encode()
