from .generated import (
    ACTIVE_BOOKING_STATUSES,
    BOOKING_STATUSES,
    Base,
    BlockedIntervals,
    Bookings,
    Providers,
    SlotEvents,
    SlotHolds,
    WaitlistEntries,
    metadata,
)

__all__ = [
    "ACTIVE_BOOKING_STATUSES",
    "BOOKING_STATUSES",
    "Base",
    "BlockedIntervals",
    "Bookings",
    "Providers",
    "SlotEvents",
    "SlotHolds",
    "WaitlistEntries",
    "metadata",
]
