# backend/slotkeeper/schemas/bookings.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class BookingConfirm(BaseModel):
    slot_key: str
    notes: Optional[str] = None

    # True → booking stays `pending` until approved (payment flow)
    await_payment: bool = False

    model_config = {"from_attributes": True}


class BookingTransition(BaseModel):
    # Optimistic concurrency: omit to act on the current version
    version: Optional[int] = None

    model_config = {"from_attributes": True}


class BookingCancel(BookingTransition):
    reason: Optional[str] = None


class BookingReschedule(BookingTransition):
    slot_key: str


class BookingRead(BaseModel):
    id: int

    provider_id: int
    client_id: str

    scheduled_at: datetime
    duration_minutes: int

    status: str
    version: int
    notes: Optional[str] = None
    series_id: Optional[str] = None
    rescheduled_from_id: Optional[int] = None

    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    completed_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    booking: BookingRead
    refund_eligible: bool

    model_config = {"from_attributes": True}
