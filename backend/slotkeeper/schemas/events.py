# backend/slotkeeper/schemas/events.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SlotEventRead(BaseModel):
    provider_id: int
    sequence: int
    type: str = Field(validation_alias="event_type")
    slot_key: str
    start_at: datetime
    created_at: datetime

    # Only present on events addressed to the caller
    client_id: Optional[str] = None
    payload: dict = {}

    model_config = {"from_attributes": True, "populate_by_name": True}


class EventReplayResponse(BaseModel):
    provider_id: int
    since: int
    last_sequence: int
    events: list[SlotEventRead]

    model_config = {"from_attributes": True}
