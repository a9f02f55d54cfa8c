import threading
from datetime import timedelta

from slotkeeper.errors import Ack, Conflict, ConflictReason, NotFound, Unavailable, UnavailableReason
from slotkeeper.services.holds import Hold
from slotkeeper.services.reservations import BookingDetails

from conftest import NOW, slot


def test_acquire_returns_hold_with_absolute_expiry(system, provider_id):
    hold = system.holds.acquire_hold(slot(provider_id, "2026-04-14 09:00"), "sess-a")

    assert isinstance(hold, Hold)
    assert hold.holder_session_id == "sess-a"
    assert hold.expires_at == NOW + timedelta(seconds=300)
    assert hold.version == 1


def test_second_session_conflicts_while_hold_is_live(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")

    result = system.holds.acquire_hold(key, "sess-b")

    assert isinstance(result, Conflict)
    assert result.reason == ConflictReason.LOCKED_BY_OTHER


def test_same_session_reacquire_is_idempotent(system, provider_id, clock):
    key = slot(provider_id, "2026-04-14 09:00")
    first = system.holds.acquire_hold(key, "sess-a")
    clock.advance(seconds=60)

    second = system.holds.acquire_hold(key, "sess-a")

    assert isinstance(second, Hold)
    assert second.version == first.version + 1
    assert second.expires_at == clock.now + timedelta(seconds=300)


def test_expired_hold_never_blocks(system, provider_id, clock):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")
    clock.advance(seconds=301)

    result = system.holds.acquire_hold(key, "sess-b")

    assert isinstance(result, Hold)
    assert result.holder_session_id == "sess-b"
    assert system.holds.get_hold(key).holder_session_id == "sess-b"


def test_overlapping_hold_on_other_duration_conflicts(system, provider_id):
    system.holds.acquire_hold(slot(provider_id, "2026-04-14 09:00", 60), "sess-a")

    result = system.holds.acquire_hold(slot(provider_id, "2026-04-14 09:30"), "sess-b")

    assert isinstance(result, Conflict)
    assert result.reason == ConflictReason.LOCKED_BY_OTHER


def test_ttl_is_capped(system, provider_id):
    hold = system.holds.acquire_hold(slot(provider_id, "2026-04-14 09:00"), "sess-a", ttl_seconds=10_000)
    assert hold.expires_at == NOW + timedelta(seconds=900)


def test_release_frees_slot_for_others(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")

    ack = system.holds.release_hold(key, "sess-a")

    assert ack == Ack("released")
    assert system.holds.get_hold(key) is None
    assert isinstance(system.holds.acquire_hold(key, "sess-b"), Hold)


def test_release_by_non_owner_is_noop(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")

    ack = system.holds.release_hold(key, "sess-b")

    assert ack.detail == "not held"
    assert system.holds.get_hold(key).holder_session_id == "sess-a"


def test_extend_hold(system, provider_id, clock):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")
    clock.advance(seconds=200)

    extended = system.holds.extend_hold(key, "sess-a", ttl_seconds=600)
    assert isinstance(extended, Hold)
    assert extended.expires_at == clock.now + timedelta(seconds=600)

    other = system.holds.extend_hold(key, "sess-b")
    assert isinstance(other, Conflict)

    clock.advance(seconds=601)
    assert isinstance(system.holds.extend_hold(key, "sess-a"), NotFound)


def test_acquire_on_booked_slot_reports_already_booked(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")
    system.engine.confirm(key, "sess-a", BookingDetails(client_id="alice"))

    result = system.holds.acquire_hold(key, "sess-b")

    assert isinstance(result, Conflict)
    assert result.reason == ConflictReason.ALREADY_BOOKED


def test_acquire_outside_schedule_is_unavailable(system, provider_id):
    result = system.holds.acquire_hold(slot(provider_id, "2026-04-14 13:00"), "sess-a")

    assert isinstance(result, Unavailable)
    assert result.reason == UnavailableReason.OUTSIDE_SCHEDULE


def test_sweep_expires_holds_and_emits_released(system, provider_id, clock):
    key = slot(provider_id, "2026-04-14 09:00")
    stream = system.subscribe(provider_id)
    system.holds.acquire_hold(key, "sess-a")
    clock.advance(seconds=301)

    assert system.holds.sweep_expired() == 1
    assert system.holds.sweep_expired() == 0

    events = stream.drain()
    assert [e.event_type for e in events] == ["locked", "released"]
    assert events[1].payload == {"reason": "expired"}


def test_concurrent_acquires_grant_exactly_one_hold(system, provider_id):
    key = slot(provider_id, "2026-04-14 10:00")
    results = []
    barrier = threading.Barrier(8)

    def worker(i):
        barrier.wait()
        results.append(system.holds.acquire_hold(key, f"sess-{i}"))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    holds = [r for r in results if isinstance(r, Hold)]
    conflicts = [r for r in results if isinstance(r, Conflict)]
    assert len(holds) == 1
    assert len(conflicts) == 7
    assert system.holds.get_hold(key).holder_session_id == holds[0].holder_session_id
