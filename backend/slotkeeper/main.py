import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import settings
from .database import SessionLocal, engine
from .errors import OperationTimeout, StoreUnavailable
from .models import Base
from .redis_client import redis_client
from .routers import bookings, events, holds, providers, recurrences, slots, waitlist
from .services.expiry_sweeper import expiry_sweeper_loop
from .services.system import build_system

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    app.state.system = build_system(SessionLocal, redis=redis_client, settings=settings)

    sweeper = asyncio.create_task(expiry_sweeper_loop(app.state.system))
    logger.info("slotkeeper started")
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        logger.info("slotkeeper stopped")


app = FastAPI(title="Slotkeeper Reservation API", lifespan=lifespan)

app.include_router(providers.router)
app.include_router(slots.router)
app.include_router(holds.router)
app.include_router(bookings.router)
app.include_router(waitlist.router)
app.include_router(recurrences.router)
app.include_router(events.router)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.warning(f"Store unavailable on {request.method} {request.url.path}: {exc}")
    reason = "OperationTimeout" if isinstance(exc, OperationTimeout) else "StoreUnavailable"
    return JSONResponse(
        status_code=503,
        content={"detail": {"reason": reason, "message": str(exc)}},
        headers={"Retry-After": "1"},
    )


@app.get("/health")
def health(request: Request):
    redis = request.app.state.system.redis
    if redis is None:
        return {"redis": None}
    try:
        return {"redis": redis.ping()}
    except Exception as e:
        logger.error(f"Redis ping failed: {e}")
        return {"redis": False}
