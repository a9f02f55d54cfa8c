# backend/slotkeeper/routers/recurrences.py

from fastapi import APIRouter, Depends, HTTPException

from ..schemas.recurrences import OccurrenceRead, RecurrenceExpand, RecurrenceResponse
from ..services.recurrence import OUTCOME_BOOKED, RecurrenceRule
from ..services.reservations import BookingDetails
from ..services.system import ReservationSystem
from .dependencies import get_client_id, get_session_id, get_system, parse_slot_key

router = APIRouter(prefix="/recurrences", tags=["recurrences"])


@router.post("/expand", response_model=RecurrenceResponse)
def expand_recurrence(
    data: RecurrenceExpand,
    session_id: str = Depends(get_session_id),
    client_id: str = Depends(get_client_id),
    system: ReservationSystem = Depends(get_system),
):
    """
    Book a recurring series one occurrence at a time.

    Always 200: each occurrence reports Booked / Conflict / Unavailable.
    """
    try:
        rule = RecurrenceRule(
            frequency=data.frequency,
            anchor=parse_slot_key(data.slot_key),
            interval=data.interval,
            occurrence_count=data.occurrence_count,
            until_date=data.until_date,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    reports = system.expand_recurrence(
        rule, session_id, BookingDetails(client_id=client_id, notes=data.notes)
    )
    if reports is None:
        raise HTTPException(status_code=404, detail="Provider not found")

    booked = [r.booking for r in reports if r.outcome == OUTCOME_BOOKED]
    return RecurrenceResponse(
        series_id=booked[0].series_id if booked else None,
        booked_count=len(booked),
        occurrences=[
            OccurrenceRead(
                slot_key=r.slot_key.encode(),
                scheduled_at=r.scheduled_at,
                outcome=r.outcome,
                reason=r.reason,
                detail=r.detail,
                booking_id=r.booking.id if r.booking else None,
            )
            for r in reports
        ],
    )
