# backend/slotkeeper/schemas/waitlist.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class WaitlistJoin(BaseModel):
    slot_key: str

    model_config = {"from_attributes": True}


class WaitlistEntryRead(BaseModel):
    id: int
    slot_key: str
    provider_id: int
    client_id: str
    requested_at: datetime

    # Set while the slot is offered to this client
    offer_expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
