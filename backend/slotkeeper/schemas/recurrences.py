# backend/slotkeeper/schemas/recurrences.py

from datetime import date, datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator


class RecurrenceExpand(BaseModel):
    # First occurrence
    slot_key: str

    frequency: Literal["daily", "weekly", "monthly"]
    interval: int = Field(default=1, ge=1)

    # Exactly one of these
    occurrence_count: Optional[int] = Field(default=None, ge=1)
    until_date: Optional[date] = None

    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_bound(self):
        if (self.occurrence_count is None) == (self.until_date is None):
            raise ValueError("exactly one of occurrence_count / until_date is required")
        return self

    model_config = {"from_attributes": True}


class OccurrenceRead(BaseModel):
    slot_key: str
    scheduled_at: datetime
    outcome: Literal["Booked", "Conflict", "Unavailable"]
    reason: Optional[str] = None
    detail: str = ""
    booking_id: Optional[int] = None

    model_config = {"from_attributes": True}


class RecurrenceResponse(BaseModel):
    series_id: Optional[str] = None
    booked_count: int
    occurrences: list[OccurrenceRead]

    model_config = {"from_attributes": True}
