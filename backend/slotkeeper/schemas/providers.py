# backend/slotkeeper/schemas/providers.py

import json
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, field_validator, model_validator


def _check_timezone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown time zone: {value}") from None
    return value


def _check_schedule(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        raise ValueError("work_schedule must be a JSON object") from None
    if not isinstance(parsed, dict):
        raise ValueError("work_schedule must be a JSON object")
    return value


class ProviderCreate(BaseModel):
    name: str
    timezone: str = "UTC"
    slot_duration_minutes: int = 30

    # {"mon": {"enabled": true, "start": "09:00", "end": "18:00"}, ...}
    work_schedule: str = "{}"

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value):
        return _check_timezone(value)

    @field_validator("work_schedule")
    @classmethod
    def check_schedule(cls, value):
        return _check_schedule(value)

    model_config = {"from_attributes": True}


class ProviderUpdate(BaseModel):
    is_active: Optional[bool] = None
    name: Optional[str] = None
    timezone: Optional[str] = None
    slot_duration_minutes: Optional[int] = None
    work_schedule: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value):
        return _check_timezone(value)

    @field_validator("work_schedule")
    @classmethod
    def check_schedule(cls, value):
        return _check_schedule(value)

    model_config = {"from_attributes": True}


class ProviderRead(BaseModel):
    id: int
    name: str
    timezone: str
    slot_duration_minutes: int
    work_schedule: str
    is_active: bool

    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BlockCreate(BaseModel):
    start_at: datetime
    end_at: datetime
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self

    model_config = {"from_attributes": True}


class BlockRead(BaseModel):
    id: int
    provider_id: int
    start_at: datetime
    end_at: datetime
    reason: Optional[str] = None

    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
