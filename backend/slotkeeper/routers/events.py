# backend/slotkeeper/routers/events.py
"""
Slot events API.

GET /events/{provider_id}         - Replay persisted events after a sequence
GET /events/{provider_id}/stream  - Live SSE stream (Last-Event-ID catch-up)

SSE `id:` is the per-provider sequence, so browsers resume from the last
event they saw. A `resync` event tells the client it missed events and
should re-fetch availability.
"""

import asyncio
import json
import logging
from datetime import date
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..schemas.events import EventReplayResponse, SlotEventRead
from ..services.events import EventStream, SlotEvent
from ..services.system import ReservationSystem
from .dependencies import get_optional_client_id, get_system

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

POLL_SECONDS = 1.0


@router.get("/{provider_id}", response_model=EventReplayResponse)
def replay_events(
    provider_id: int,
    since: int = 0,
    limit: int = 500,
    client_id: str | None = Depends(get_optional_client_id),
    system: ReservationSystem = Depends(get_system),
):
    events = system.broadcaster.replay(provider_id, since, limit, client_id)
    return EventReplayResponse(
        provider_id=provider_id,
        since=since,
        last_sequence=events[-1].sequence if events else since,
        events=[SlotEventRead.model_validate(e) for e in events],
    )


def _sse(event: SlotEvent) -> dict:
    return {
        "id": str(event.sequence),
        "event": event.event_type,
        "data": json.dumps(event.to_dict()),
    }


def catch_up_events(system: ReservationSystem, stream: EventStream, since: int) -> list[SlotEvent]:
    """Logged events after `since` that the stream will not deliver live."""
    missed = system.broadcaster.replay(stream.provider_id, since, 1000, stream.client_id)
    return [
        event
        for event in missed
        if event.sequence <= stream.start_sequence and stream.matches(event)
    ]


@router.get("/{provider_id}/stream")
async def stream_events(
    provider_id: int,
    request: Request,
    start_date: date | None = None,
    end_date: date | None = None,
    client_id: str | None = Depends(get_optional_client_id),
    system: ReservationSystem = Depends(get_system),
) -> EventSourceResponse:
    """Live slot events for a provider, filtered by slot date."""
    tz = await asyncio.to_thread(system.provider_zone, provider_id)
    if tz is None:
        raise HTTPException(status_code=404, detail="Provider not found")

    last_event_id = request.headers.get("Last-Event-ID")
    since = int(last_event_id) if last_event_id and last_event_id.isdigit() else None
    if since is not None:
        logger.info(f"SSE reconnect: provider={provider_id} last_event_id={since}")

    stream = await asyncio.to_thread(
        system.subscribe, provider_id, start_date, end_date, client_id
    )

    async def event_generator() -> AsyncGenerator[dict, None]:
        try:
            if since is not None:
                # Catch up from the log, then continue with the live stream
                missed = await asyncio.to_thread(catch_up_events, system, stream, since)
                for event in missed:
                    yield _sse(event)

            while not stream.closed:
                if await request.is_disconnected():
                    break
                event = await asyncio.to_thread(stream.get, POLL_SECONDS)
                if event is not None:
                    yield _sse(event)
                if stream.gap_detected:
                    stream.gap_detected = False
                    yield {"event": "resync", "data": json.dumps({"last_sequence": stream.last_sequence})}
        finally:
            system.broadcaster.unsubscribe(stream)
            logger.info(f"SSE closed: provider={provider_id}")

    return EventSourceResponse(
        event_generator(),
        ping=system.settings.sse_heartbeat_seconds,
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
        },
    )
