# backend/slotkeeper/routers/slots.py
"""
Slots API endpoints.

GET /providers/{id}/availability - Open slots over a date range
GET /providers/{id}/calendar     - Open slot count per day
"""

from datetime import date
from fastapi import APIRouter, Depends, HTTPException

from ..schemas.slots import (
    AvailabilityResponse,
    CalendarDay,
    CalendarResponse,
    SlotRead,
)
from ..services.slots.availability import clamp_dates
from ..services.system import ReservationSystem
from .dependencies import get_system, slot_payload

router = APIRouter(prefix="/providers", tags=["slots"])


def _resolve_range(
    system: ReservationSystem,
    provider_id: int,
    start_date: date | None,
    end_date: date | None,
) -> list[date]:
    tz = system.provider_zone(provider_id)
    if tz is None:
        raise HTTPException(status_code=404, detail="Provider not found")
    return clamp_dates(start_date, end_date, tz.key, system.config, system.clock())


@router.get("/{id}/availability", response_model=AvailabilityResponse)
def get_availability(
    id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    duration_minutes: int | None = None,
    system: ReservationSystem = Depends(get_system),
):
    """Bookable slots: schedule minus blocks, bookings and live holds."""
    dates = _resolve_range(system, id, start_date, end_date)
    if not dates:
        raise HTTPException(status_code=400, detail="Date range is outside the booking horizon")

    slots = system.availability(id, dates[0], dates[-1], duration_minutes)
    duration = duration_minutes or (slots[0].duration_minutes if slots else None)

    return AvailabilityResponse(
        provider_id=id,
        start_date=dates[0],
        end_date=dates[-1],
        duration_minutes=duration or system.config.default_duration_minutes,
        slots=[SlotRead(**slot_payload(s)) for s in slots],
    )


@router.get("/{id}/calendar", response_model=CalendarResponse)
def get_calendar(
    id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    duration_minutes: int | None = None,
    system: ReservationSystem = Depends(get_system),
):
    """Calendar of available days. Defaults to the whole horizon."""
    config = system.config
    if end_date is None and start_date is None:
        dates = _resolve_range(system, id, None, date.max)
    else:
        dates = _resolve_range(system, id, start_date, end_date)
    if not dates:
        raise HTTPException(status_code=400, detail="Date range is outside the booking horizon")

    counts = system.calendar(id, dates[0], dates[-1], duration_minutes)

    return CalendarResponse(
        provider_id=id,
        start_date=dates[0],
        end_date=dates[-1],
        days=[
            CalendarDay(date=dt, has_slots=count > 0, open_slots_count=count)
            for dt, count in sorted(counts.items())
        ],
        horizon_days=config.horizon_days,
        min_advance_minutes=config.min_advance_minutes,
    )
