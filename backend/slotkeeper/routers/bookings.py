# backend/slotkeeper/routers/bookings.py
# PATCH = 405, DELETE = 405 (cancellation is a state change, never a delete)

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..errors import NotFound
from ..schemas.bookings import (
    BookingCancel,
    BookingConfirm,
    BookingRead,
    BookingReschedule,
    BookingTransition,
    CancelResponse,
)
from ..services.reservations import BookingDetails
from ..services.system import ReservationSystem
from .dependencies import (
    get_client_id,
    get_session_id,
    get_system,
    is_admin,
    parse_slot_key,
    raise_for_outcome,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.get("/", response_model=list[BookingRead])
def list_bookings(
    client_id: str | None = None,
    provider_id: int | None = None,
    status_filter: str | None = Query(None, alias="status"),
    limit: int = 100,
    offset: int = 0,
    system: ReservationSystem = Depends(get_system),
):
    return system.engine.list_bookings(client_id, provider_id, status_filter, limit, offset)


@router.get("/{id}", response_model=BookingRead)
def get_booking(id: int, system: ReservationSystem = Depends(get_system)):
    obj = system.engine.get_booking(id)
    if isinstance(obj, NotFound):
        raise HTTPException(status_code=404, detail="Not found")
    return obj


@router.post("/confirm", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def confirm_booking(
    data: BookingConfirm,
    session_id: str = Depends(get_session_id),
    client_id: str = Depends(get_client_id),
    system: ReservationSystem = Depends(get_system),
):
    """Promote the session's hold to a booking."""
    slot = parse_slot_key(data.slot_key)
    details = BookingDetails(
        client_id=client_id,
        notes=data.notes,
        await_payment=data.await_payment,
    )
    result = system.engine.confirm(slot, session_id, details)
    raise_for_outcome(result, system, slot)
    return result


@router.post("/{id}/cancel", response_model=CancelResponse)
def cancel_booking(
    id: int,
    data: BookingCancel,
    client_id: str = Depends(get_client_id),
    admin: bool = Depends(is_admin),
    system: ReservationSystem = Depends(get_system),
):
    result = system.engine.cancel(
        id,
        client_id,
        expected_version=data.version,
        override=admin,
        reason=data.reason,
    )
    raise_for_outcome(result)
    return CancelResponse(
        booking=BookingRead.model_validate(result.data["booking"]),
        refund_eligible=result.data["refund_eligible"],
    )


@router.post("/{id}/complete", response_model=BookingRead)
def complete_booking(
    id: int,
    data: BookingTransition,
    system: ReservationSystem = Depends(get_system),
):
    result = system.engine.complete(id, data.version)
    raise_for_outcome(result)
    return result.data["booking"]


@router.post("/{id}/approve", response_model=BookingRead)
def approve_booking(
    id: int,
    data: BookingTransition,
    system: ReservationSystem = Depends(get_system),
):
    result = system.engine.approve(id, data.version)
    raise_for_outcome(result)
    return result.data["booking"]


@router.post("/{id}/reschedule", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def reschedule_booking(
    id: int,
    data: BookingReschedule,
    session_id: str = Depends(get_session_id),
    client_id: str = Depends(get_client_id),
    admin: bool = Depends(is_admin),
    system: ReservationSystem = Depends(get_system),
):
    """Move a booking to a slot held by the session. Returns the new booking."""
    slot = parse_slot_key(data.slot_key)
    result = system.engine.reschedule(
        id,
        slot,
        session_id,
        client_id,
        expected_version=data.version,
        override=admin,
    )
    raise_for_outcome(result, system, slot)
    return result


@router.patch("/{id}")
def patch_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )


@router.delete("/{id}")
def delete_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )
