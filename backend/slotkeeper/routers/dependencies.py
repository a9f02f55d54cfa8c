# backend/slotkeeper/routers/dependencies.py
"""
Shared router dependencies.

Identity comes from trusted headers set by the gateway in front of the API:
  X-Session-Id  checkout session (holds are owned by sessions)
  X-Client-Id   end client (bookings / waitlist entries are owned by clients)
  X-Actor-Role  "admin" enables administrative override
"""

from fastapi import Header, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder

from ..errors import (
    Conflict,
    InvalidTransition,
    NotFound,
    TooEarlyToComplete,
    TooLateToCancel,
    Unavailable,
    is_failure,
)
from ..services.slots.keys import SlotKey
from ..services.system import ReservationSystem

ADMIN_ROLE = "admin"


def get_system(request: Request) -> ReservationSystem:
    return request.app.state.system


def get_session_id(x_session_id: str = Header(...)) -> str:
    return x_session_id


def get_client_id(x_client_id: str = Header(...)) -> str:
    return x_client_id


def get_optional_client_id(x_client_id: str | None = Header(None)) -> str | None:
    return x_client_id


def is_admin(x_actor_role: str | None = Header(None)) -> bool:
    return (x_actor_role or "").lower() == ADMIN_ROLE


def parse_slot_key(raw: str) -> SlotKey:
    try:
        return SlotKey.parse(raw)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def slot_payload(slot: SlotKey) -> dict:
    return {
        "slot_key": slot.encode(),
        "provider_id": slot.provider_id,
        "start": slot.start,
        "end": slot.end,
        "duration_minutes": slot.duration_minutes,
    }


def raise_for_outcome(
    result,
    system: ReservationSystem | None = None,
    slot_key: SlotKey | None = None,
) -> None:
    """
    Translate a failure outcome into HTTPException. Successes pass through.

    Conflicts on a slot carry nearby alternatives.
    """
    if not is_failure(result):
        return

    if isinstance(result, Conflict):
        detail = {"reason": result.reason.value, "message": result.detail}
        if system is not None and slot_key is not None:
            detail["alternatives"] = [
                slot_payload(s) for s in system.alternatives(slot_key)
            ]
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=jsonable_encoder(detail))

    if isinstance(result, Unavailable):
        raise HTTPException(
            status_code=422,
            detail={"reason": result.reason.value, "message": result.detail},
        )

    if isinstance(result, NotFound):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"reason": "NotFound", "message": f"{result.entity} {result.key} not found"},
        )

    if isinstance(result, TooLateToCancel):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "reason": "TooLateToCancel",
                "message": f"Cancellation deadline was {result.deadline.isoformat()}",
                "deadline": result.deadline.isoformat(),
            },
        )

    if isinstance(result, TooEarlyToComplete):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "reason": "TooEarlyToComplete",
                "message": f"Booking starts at {result.scheduled_at.isoformat()}",
            },
        )

    if isinstance(result, InvalidTransition):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "reason": "InvalidTransition",
                "message": f"Cannot move booking from {result.current} to {result.target}",
            },
        )

