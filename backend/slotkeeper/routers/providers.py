# backend/slotkeeper/routers/providers.py
# PATCH = ALLOWED, DELETE = soft-delete (is_active)

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.generated import (
    BlockedIntervals as DBBlockedIntervals,
    Providers as DBProviders,
)
from ..schemas.providers import (
    BlockCreate,
    BlockRead,
    ProviderCreate,
    ProviderRead,
    ProviderUpdate,
)
from ..services.slots.invalidator import (
    get_affected_dates_from_block,
    invalidate_provider_cache,
)
from ..services.system import ReservationSystem
from .dependencies import get_system

router = APIRouter(prefix="/providers", tags=["providers"])

# Changing any of these invalidates the cached grid
GRID_FIELDS = {"work_schedule", "timezone", "slot_duration_minutes", "is_active"}


@router.get("/", response_model=list[ProviderRead])
def list_providers(db: Session = Depends(get_db)):
    return (
        db.query(DBProviders)
        .filter(DBProviders.is_active == 1)
        .all()
    )


@router.get("/{id}", response_model=ProviderRead)
def get_provider(id: int, db: Session = Depends(get_db)):
    obj = db.get(DBProviders, id)
    if not obj:
        raise HTTPException(status_code=404, detail="Not found")
    return obj


@router.post("/", response_model=ProviderRead, status_code=status.HTTP_201_CREATED)
def create_provider(
    data: ProviderCreate,
    db: Session = Depends(get_db),
):
    obj = DBProviders(**data.model_dump())
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@router.patch("/{id}", response_model=ProviderRead)
def update_provider(
    id: int,
    data: ProviderUpdate,
    db: Session = Depends(get_db),
    system: ReservationSystem = Depends(get_system),
):
    obj = db.get(DBProviders, id)
    if not obj:
        raise HTTPException(status_code=404, detail="Not found")

    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(obj, field, value)

    db.commit()
    db.refresh(obj)

    if GRID_FIELDS & changes.keys():
        invalidate_provider_cache(system.redis, id)

    return obj


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_provider(
    id: int,
    db: Session = Depends(get_db),
    system: ReservationSystem = Depends(get_system),
):
    obj = db.get(DBProviders, id)
    if not obj:
        raise HTTPException(status_code=404, detail="Not found")

    obj.is_active = 0
    db.commit()

    invalidate_provider_cache(system.redis, id)


# ── Blocked intervals ───────────────────────────────────────────────────


@router.get("/{id}/blocks", response_model=list[BlockRead])
def list_blocks(id: int, db: Session = Depends(get_db)):
    return (
        db.query(DBBlockedIntervals)
        .filter(DBBlockedIntervals.provider_id == id)
        .order_by(DBBlockedIntervals.start_at)
        .all()
    )


@router.post("/{id}/blocks", response_model=BlockRead, status_code=status.HTTP_201_CREATED)
def create_block(
    id: int,
    data: BlockCreate,
    db: Session = Depends(get_db),
    system: ReservationSystem = Depends(get_system),
):
    provider = db.get(DBProviders, id)
    if not provider:
        raise HTTPException(status_code=404, detail="Not found")

    obj = DBBlockedIntervals(provider_id=id, **data.model_dump())
    db.add(obj)
    db.commit()
    db.refresh(obj)

    invalidate_provider_cache(
        system.redis, id, get_affected_dates_from_block(obj, provider.timezone)
    )
    return obj


@router.delete("/{id}/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_block(
    id: int,
    block_id: int,
    db: Session = Depends(get_db),
    system: ReservationSystem = Depends(get_system),
):
    obj = db.get(DBBlockedIntervals, block_id)
    if not obj or obj.provider_id != id:
        raise HTTPException(status_code=404, detail="Not found")

    provider = db.get(DBProviders, id)
    dates = get_affected_dates_from_block(obj, provider.timezone if provider else None)
    db.delete(obj)
    db.commit()

    invalidate_provider_cache(system.redis, id, dates)
