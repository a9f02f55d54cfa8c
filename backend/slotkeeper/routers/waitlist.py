# backend/slotkeeper/routers/waitlist.py

from fastapi import APIRouter, Depends, status

from ..schemas.waitlist import WaitlistEntryRead, WaitlistJoin
from ..services.system import ReservationSystem
from .dependencies import get_client_id, get_system, parse_slot_key, raise_for_outcome

router = APIRouter(prefix="/waitlist", tags=["waitlist"])


@router.get("/{slot_key}", response_model=list[WaitlistEntryRead])
def list_waitlist(slot_key: str, system: ReservationSystem = Depends(get_system)):
    return system.waitlist.entries(parse_slot_key(slot_key))


@router.post("/", response_model=WaitlistEntryRead, status_code=status.HTTP_201_CREATED)
def join_waitlist(
    data: WaitlistJoin,
    client_id: str = Depends(get_client_id),
    system: ReservationSystem = Depends(get_system),
):
    result = system.waitlist.join(parse_slot_key(data.slot_key), client_id)
    raise_for_outcome(result)
    return result


@router.delete("/{slot_key}")
def withdraw_waitlist(
    slot_key: str,
    client_id: str = Depends(get_client_id),
    system: ReservationSystem = Depends(get_system),
):
    ack = system.waitlist.withdraw(parse_slot_key(slot_key), client_id)
    return {"detail": ack.detail}
