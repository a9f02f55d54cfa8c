# backend/tests/conftest.py
"""
Shared fixtures.

Every test gets its own SQLite file database (threads share it through the
engine pool) and a controllable clock. The module-level engine in
slotkeeper.database is pointed at a throwaway file before any app import.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta

os.environ["DATABASE_URL"] = f"sqlite:///{tempfile.gettempdir()}/slotkeeper-import.db"
os.environ.pop("REDIS_URL", None)

import pytest
from fastapi.testclient import TestClient

from slotkeeper.config import Settings
from slotkeeper.database import get_db, make_engine, make_session_factory
from slotkeeper.models import Base, Providers
from slotkeeper.services.slots.config import BookingConfig
from slotkeeper.services.slots.keys import SlotKey
from slotkeeper.services.system import build_system

# Sunday. The first Tuesday after it is 2026-04-14.
NOW = datetime(2026, 4, 12, 12, 0)

WEEKDAYS_9_TO_12 = {
    day: {"enabled": True, "start": "09:00", "end": "12:00"}
    for day in ("mon", "tue", "wed", "thu", "fri")
}
TUESDAY_9_TO_10 = {"tue": {"enabled": True, "start": "09:00", "end": "10:00"}}


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def slot(provider_id: int, start: str, duration: int = 30) -> SlotKey:
    """slot(1, "2026-04-14 09:00") → SlotKey in naive UTC."""
    return SlotKey(provider_id, datetime.strptime(start, "%Y-%m-%d %H:%M"), duration)


def make_provider(
    session_factory,
    schedule: dict,
    timezone: str = "UTC",
    duration: int = 30,
    name: str = "Test Provider",
) -> int:
    db = session_factory()
    try:
        provider = Providers(
            name=name,
            timezone=timezone,
            slot_duration_minutes=duration,
            work_schedule=json.dumps(schedule),
            is_active=1,
        )
        db.add(provider)
        db.commit()
        return provider.id
    finally:
        db.close()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'slotkeeper.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        redis_url=None,
        hold_ttl_seconds=300,
        max_hold_ttl_seconds=900,
        waitlist_claim_window_seconds=900,
        cancellation_window_hours=24,
        recurrence_max_occurrences=52,
        operation_timeout_seconds=5.0,
    )


@pytest.fixture
def system(session_factory, clock, test_settings):
    return build_system(
        session_factory,
        redis=None,
        settings=test_settings,
        config=BookingConfig(),
        clock=clock,
    )


@pytest.fixture
def provider_id(session_factory):
    return make_provider(session_factory, WEEKDAYS_9_TO_12)


@pytest.fixture
def tuesday_provider_id(session_factory):
    return make_provider(session_factory, TUESDAY_9_TO_10, name="Tuesday Provider")


@pytest.fixture
def client(system, session_factory):
    from slotkeeper.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    # No lifespan: the test system replaces the production wiring
    app.state.system = system
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
