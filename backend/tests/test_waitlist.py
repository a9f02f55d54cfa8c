from datetime import timedelta

from slotkeeper.errors import Ack, Conflict, ConflictReason, Unavailable
from slotkeeper.services.holds import Hold
from slotkeeper.services.reservations import Booking, BookingDetails

from conftest import NOW, slot


def booked_slot(system, provider_id, client_id="alice"):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, f"sess-{client_id}", client_id=client_id)
    booking = system.engine.confirm(key, f"sess-{client_id}", BookingDetails(client_id=client_id))
    assert isinstance(booking, Booking)
    return key, booking


def test_join_is_idempotent_and_makes_no_offer(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")

    first = system.waitlist.join(key, "bob")
    second = system.waitlist.join(key, "bob")

    assert first.id == second.id
    assert first.offer_expires_at is None
    # Slot is free, but joining never triggers an offer by itself
    assert system.holds.get_hold(key) is None
    assert len(system.waitlist.entries(key)) == 1


def test_join_rejects_invalid_slot(system, provider_id):
    result = system.waitlist.join(slot(provider_id, "2026-04-14 13:00"), "bob")
    assert isinstance(result, Unavailable)


def test_cancel_offers_slot_to_earliest_waiter(system, provider_id, clock):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    clock.advance(seconds=1)
    system.waitlist.join(key, "carol")

    system.engine.cancel(booking.id, "alice")

    bob, carol = system.waitlist.entries(key)
    assert bob.client_id == "bob"
    assert bob.offer_expires_at == clock.now + timedelta(seconds=900)
    assert carol.offer_expires_at is None

    hold = system.holds.get_hold(key)
    assert hold.reserved_for == "bob"
    assert hold.expires_at == bob.offer_expires_at


def test_offered_slot_is_reserved_for_offered_client(system, provider_id):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    system.waitlist.join(key, "carol")
    system.engine.cancel(booking.id, "alice")

    for session, client in (("sess-dave", None), ("sess-carol", "carol")):
        result = system.holds.acquire_hold(key, session, client_id=client)
        assert isinstance(result, Conflict)
        assert result.reason == ConflictReason.LOCKED_BY_OTHER

    hold = system.holds.acquire_hold(key, "sess-bob", client_id="bob")
    assert isinstance(hold, Hold)
    # Claiming keeps the full claim window
    assert hold.expires_at == NOW + timedelta(seconds=900)

    booking = system.engine.confirm(key, "sess-bob", BookingDetails(client_id="bob"))
    assert isinstance(booking, Booking)
    assert [e.client_id for e in system.waitlist.entries(key)] == ["carol"]
    assert system.waitlist.entries(key)[0].offer_expires_at is None


def test_lapsed_offer_moves_to_next_waiter(system, provider_id, clock):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    clock.advance(seconds=1)
    system.waitlist.join(key, "carol")
    system.engine.cancel(booking.id, "alice")

    bob_stream = system.subscribe(provider_id, client_id="bob")
    carol_stream = system.subscribe(provider_id, client_id="carol")
    clock.advance(seconds=901)

    assert system.sweep() == {"offers_expired": 1, "holds_expired": 0}

    entries = system.waitlist.entries(key)
    assert [e.client_id for e in entries] == ["carol"]
    assert entries[0].offer_expires_at == clock.now + timedelta(seconds=900)
    assert system.holds.get_hold(key).reserved_for == "carol"

    bob_events = bob_stream.drain()
    assert [(e.event_type, e.client_id) for e in bob_events] == [
        ("waitlist-expired", "bob"),
        ("waitlist-offered", None),
    ]
    carol_events = carol_stream.drain()
    assert [(e.event_type, e.client_id) for e in carol_events] == [
        ("waitlist-expired", None),
        ("waitlist-offered", "carol"),
    ]
    assert "offer_expires_at" in carol_events[1].payload


def test_expired_waiter_is_not_requeued(system, provider_id, clock):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    system.engine.cancel(booking.id, "alice")
    clock.advance(seconds=901)

    system.sweep()

    assert system.waitlist.entries(key) == []
    assert system.holds.get_hold(key) is None


def test_withdraw_with_open_offer_passes_it_on(system, provider_id, clock):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    clock.advance(seconds=1)
    system.waitlist.join(key, "carol")
    system.engine.cancel(booking.id, "alice")

    ack = system.waitlist.withdraw(key, "bob")

    assert ack == Ack("withdrawn")
    (carol,) = system.waitlist.entries(key)
    assert carol.client_id == "carol"
    assert carol.offer_expires_at is not None
    assert system.holds.get_hold(key).reserved_for == "carol"
    assert system.waitlist.withdraw(key, "bob") == Ack("not waiting")


def test_released_hold_triggers_offer(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")
    system.waitlist.join(key, "bob")

    system.holds.release_hold(key, "sess-a")

    (bob,) = system.waitlist.entries(key)
    assert bob.offer_expires_at is not None
    assert system.holds.get_hold(key).reserved_for == "bob"


def test_anonymous_subscriber_sees_redacted_addressed_events(system, provider_id):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    stream = system.subscribe(provider_id)

    system.engine.cancel(booking.id, "alice")

    events = stream.drain()
    assert [e.event_type for e in events] == ["freed", "waitlist-offered"]
    assert all(e.client_id is None for e in events)

    replayed = system.broadcaster.replay(provider_id, client_id="bob")
    offered = [e for e in replayed if e.event_type == "waitlist-offered"]
    assert offered[0].client_id == "bob"


def test_booking_over_lapsed_offer_drops_the_waiter(system, provider_id, clock):
    key, booking = booked_slot(system, provider_id)
    system.waitlist.join(key, "bob")
    clock.advance(seconds=1)
    system.waitlist.join(key, "dave")
    system.engine.cancel(booking.id, "alice")
    bob_stream = system.subscribe(provider_id, client_id="bob")
    clock.advance(seconds=901)

    # Carol takes the slot before the sweep notices bob's offer lapsed
    system.holds.acquire_hold(key, "sess-carol", client_id="carol")
    assert isinstance(system.engine.confirm(key, "sess-carol", BookingDetails(client_id="carol")), Booking)

    entries = system.waitlist.entries(key)
    assert [(e.client_id, e.offer_expires_at) for e in entries] == [("dave", None)]
    expired = [e for e in bob_stream.drain() if e.event_type == "waitlist-expired"]
    assert [e.client_id for e in expired] == ["bob"]
    assert system.sweep()["offers_expired"] == 0
