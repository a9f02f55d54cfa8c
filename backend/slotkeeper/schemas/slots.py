# backend/slotkeeper/schemas/slots.py
"""
Pydantic schemas for slots API.
"""

from datetime import date, datetime
from pydantic import BaseModel, Field


class SlotRead(BaseModel):
    """A bookable slot."""
    slot_key: str = Field(description='"{provider_id}:{YYYYMMDDTHHMM}:{duration}"')
    provider_id: int
    start: datetime  # naive UTC
    end: datetime
    duration_minutes: int

    model_config = {"from_attributes": True}


class AvailabilityResponse(BaseModel):
    """Open slots for a provider over a date range."""
    provider_id: int
    start_date: date
    end_date: date
    duration_minutes: int
    slots: list[SlotRead]

    model_config = {"from_attributes": True}


class CalendarDay(BaseModel):
    """Status of a single day in calendar."""
    date: date
    has_slots: bool
    open_slots_count: int = 0

    model_config = {"from_attributes": True}


class CalendarResponse(BaseModel):
    """Response with calendar of available days."""
    provider_id: int
    start_date: date
    end_date: date
    days: list[CalendarDay]

    # Metadata
    horizon_days: int
    min_advance_minutes: int

    model_config = {"from_attributes": True}
