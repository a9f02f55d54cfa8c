# backend/slotkeeper/schemas/holds.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, field_validator


class HoldCreate(BaseModel):
    slot_key: str
    ttl_seconds: Optional[int] = None

    model_config = {"from_attributes": True}


class HoldExtend(BaseModel):
    ttl_seconds: Optional[int] = None

    model_config = {"from_attributes": True}


class HoldRead(BaseModel):
    slot_key: str
    holder_session_id: str
    expires_at: datetime
    version: int

    @field_validator("slot_key", mode="before")
    @classmethod
    def encode_slot_key(cls, value):
        return str(value)

    model_config = {"from_attributes": True}
