# backend/slotkeeper/services/slots/config.py
"""
Booking configuration for slots calculation.
"""

from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for the slot grid and booking rules.

    Attributes:
        horizon_days: How many days ahead slots can be offered/booked
        min_advance_minutes: Lead time; slots starting sooner are not bookable
        min_duration_minutes: Shortest allowed slot
        max_duration_minutes: Longest allowed slot
        default_duration_minutes: Slot length when the provider sets none
        cache_ttl_seconds: Redis cache TTL for the base grid
    """
    horizon_days: int = 60
    min_advance_minutes: int = 60
    min_duration_minutes: int = 15
    max_duration_minutes: int = 180
    default_duration_minutes: int = 30
    cache_ttl_seconds: int = 86400  # 24 hours

    def __post_init__(self):
        """Validate configuration."""
        if self.min_duration_minutes <= 0:
            raise ValueError(f"min_duration_minutes must be positive, got {self.min_duration_minutes}")
        if self.max_duration_minutes < self.min_duration_minutes:
            raise ValueError("max_duration_minutes must be >= min_duration_minutes")
        if not self.accepts_duration(self.default_duration_minutes):
            raise ValueError(
                f"default_duration_minutes must be within "
                f"{self.min_duration_minutes}..{self.max_duration_minutes}"
            )
        if self.horizon_days <= 0:
            raise ValueError(f"horizon_days must be positive, got {self.horizon_days}")
        if self.min_advance_minutes < 0:
            raise ValueError("min_advance_minutes cannot be negative")

    def accepts_duration(self, minutes: int) -> bool:
        return self.min_duration_minutes <= minutes <= self.max_duration_minutes


@lru_cache
def get_booking_config() -> BookingConfig:
    """
    Get booking configuration (singleton).

    In the future, this can read from environment or database.
    """
    return BookingConfig()


def time_str_to_minutes(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight. "24:00" -> 1440."""
    hour, minute = value.strip().split(":")
    return int(hour) * 60 + int(minute)


def minutes_to_time_str(minutes: int) -> str:
    """Convert minutes since midnight to "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
