# backend/slotkeeper/services/slots/__init__.py
"""
Slots calculation module.

Level 1: Base provider slots (cached in Redis Sorted Sets)
Level 2: Provider availability (calculated on-the-fly)
"""

from .config import BookingConfig, get_booking_config
from .keys import SlotKey
from .calculator import calculate_day_slots, classify_slot, validate_slot
from .redis_store import SlotsRedisStore
from .invalidator import invalidate_provider_cache
from .availability import get_availability, get_calendar, suggest_alternatives

__all__ = [
    "BookingConfig",
    "get_booking_config",
    "SlotKey",
    "calculate_day_slots",
    "classify_slot",
    "validate_slot",
    "SlotsRedisStore",
    "invalidate_provider_cache",
    "get_availability",
    "get_calendar",
    "suggest_alternatives",
]
