# backend/slotkeeper/routers/holds.py
# Holds are owned by the X-Session-Id that created them.

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas.holds import HoldCreate, HoldExtend, HoldRead
from ..services.system import ReservationSystem
from .dependencies import (
    get_optional_client_id,
    get_session_id,
    get_system,
    parse_slot_key,
    raise_for_outcome,
)

router = APIRouter(prefix="/holds", tags=["holds"])


@router.get("/{slot_key}", response_model=HoldRead)
def get_hold(slot_key: str, system: ReservationSystem = Depends(get_system)):
    hold = system.holds.get_hold(parse_slot_key(slot_key))
    if not hold:
        raise HTTPException(status_code=404, detail="Not found")
    return hold


@router.post("/", response_model=HoldRead, status_code=status.HTTP_201_CREATED)
def acquire_hold(
    data: HoldCreate,
    session_id: str = Depends(get_session_id),
    client_id: str | None = Depends(get_optional_client_id),
    system: ReservationSystem = Depends(get_system),
):
    slot = parse_slot_key(data.slot_key)
    result = system.holds.acquire_hold(slot, session_id, data.ttl_seconds, client_id)
    raise_for_outcome(result, system, slot)
    return result


@router.patch("/{slot_key}", response_model=HoldRead)
def extend_hold(
    slot_key: str,
    data: HoldExtend,
    session_id: str = Depends(get_session_id),
    system: ReservationSystem = Depends(get_system),
):
    result = system.holds.extend_hold(parse_slot_key(slot_key), session_id, data.ttl_seconds)
    raise_for_outcome(result)
    return result


@router.delete("/{slot_key}")
def release_hold(
    slot_key: str,
    session_id: str = Depends(get_session_id),
    system: ReservationSystem = Depends(get_system),
):
    ack = system.holds.release_hold(parse_slot_key(slot_key), session_id)
    return {"detail": ack.detail}
