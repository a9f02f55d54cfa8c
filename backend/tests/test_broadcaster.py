import json
from datetime import date, datetime
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from slotkeeper.routers.events import catch_up_events
from slotkeeper.services.events import Broadcaster, EventStream, SlotEvent

from conftest import NOW, slot


@pytest.fixture
def broadcaster(session_factory, clock):
    return Broadcaster(session_factory, redis=None, clock=clock)


def event(sequence, start="2026-04-14 09:00", client_id=None):
    key = slot(1, start)
    return SlotEvent(1, sequence, "locked", key.encode(), key.start, NOW, client_id)


def test_sequences_are_per_provider(broadcaster):
    a1 = broadcaster.publish(1, "locked", slot(1, "2026-04-14 09:00"))
    b1 = broadcaster.publish(2, "locked", slot(2, "2026-04-14 09:00"))
    a2 = broadcaster.publish(1, "released", slot(1, "2026-04-14 09:00"))

    assert (a1.sequence, a2.sequence, b1.sequence) == (1, 2, 1)
    assert broadcaster.current_sequence(1) == 2


def test_unknown_event_type_is_rejected(broadcaster):
    with pytest.raises(ValueError):
        broadcaster.publish(1, "teleported", slot(1, "2026-04-14 09:00"))
    with pytest.raises(ValueError):
        broadcaster.add_listener("teleported", lambda e: None)


def test_subscriber_only_sees_events_after_subscribe(broadcaster):
    broadcaster.publish(1, "locked", slot(1, "2026-04-14 09:00"))
    stream = broadcaster.subscribe(1)
    broadcaster.publish(1, "released", slot(1, "2026-04-14 09:00"))

    assert [e.sequence for e in stream.drain()] == [2]
    assert stream.gap_detected is False


def test_date_filter_skips_without_gap(broadcaster):
    stream = broadcaster.subscribe(1, date(2026, 4, 14), date(2026, 4, 14), ZoneInfo("UTC"))

    broadcaster.publish(1, "locked", slot(1, "2026-04-15 09:00"))
    broadcaster.publish(1, "locked", slot(1, "2026-04-14 09:00"))

    events = stream.drain()
    assert [e.slot_key for e in events] == [slot(1, "2026-04-14 09:00").encode()]
    assert stream.last_sequence == 2
    assert stream.gap_detected is False


def test_date_filter_uses_provider_local_date():
    stream = EventStream(1, date(2026, 4, 15), date(2026, 4, 15), ZoneInfo("Asia/Tokyo"))
    # 2026-04-14 20:00 UTC is 05:00 on the 15th in Tokyo
    assert stream.matches(event(1, "2026-04-14 20:00"))
    assert not stream.matches(event(1, "2026-04-14 09:00"))


def test_sequence_jump_sets_gap():
    stream = EventStream(1)
    stream.offer(event(1))
    stream.offer(event(3))
    assert stream.gap_detected is True
    # Already-seen sequences are ignored
    stream.offer(event(2))
    assert [e.sequence for e in stream.drain()] == [1, 3]


def test_overflow_sets_gap():
    stream = EventStream(1, maxsize=1)
    stream.offer(event(1))
    stream.offer(event(2))

    assert stream.gap_detected is True
    assert [e.sequence for e in stream.drain()] == [1]


def test_addressed_events_are_redacted_for_others():
    alice = EventStream(1, client_id="alice")
    anonymous = EventStream(1)

    for stream in (alice, anonymous):
        stream.offer(event(1, client_id="alice"))

    assert alice.drain()[0].client_id == "alice"
    assert anonymous.drain()[0].client_id is None


def test_closed_stream_ignores_events(broadcaster):
    stream = broadcaster.subscribe(1)
    broadcaster.unsubscribe(stream)
    broadcaster.publish(1, "locked", slot(1, "2026-04-14 09:00"))

    assert stream.get(timeout=0) is None
    assert broadcaster.subscriber_count(1) == 0


def test_replay_returns_persisted_events_after_sequence(broadcaster):
    for start in ("2026-04-14 09:00", "2026-04-14 09:30", "2026-04-14 10:00"):
        broadcaster.publish(1, "locked", slot(1, start), payload={"n": start})

    events = broadcaster.replay(1, since=1)

    assert [e.sequence for e in events] == [2, 3]
    assert events[0].payload == {"n": "2026-04-14 09:30"}
    assert events[0].to_dict()["type"] == "locked"


def test_listener_failure_does_not_break_publish(broadcaster):
    seen = []

    def broken(e):
        raise RuntimeError("boom")

    broadcaster.add_listener("freed", broken)
    broadcaster.add_listener("freed", seen.append)

    published = broadcaster.publish(1, "freed", slot(1, "2026-04-14 09:00"))

    assert seen == [published]


def test_events_are_forwarded_to_redis(session_factory, clock):
    redis = MagicMock()
    broadcaster = Broadcaster(session_factory, redis=redis, clock=clock)

    broadcaster.publish(7, "booked", slot(7, "2026-04-14 09:00"), client_id="alice")

    channel, body = redis.publish.call_args.args
    assert channel == "slots:events:7"
    assert json.loads(body)["type"] == "booked"
    assert json.loads(body)["sequence"] == 1


def test_redis_failure_is_logged_not_raised(session_factory, clock, caplog):
    redis = MagicMock()
    redis.publish.side_effect = ConnectionError("redis down")
    broadcaster = Broadcaster(session_factory, redis=redis, clock=clock)

    published = broadcaster.publish(1, "locked", slot(1, "2026-04-14 09:00"))

    assert published.sequence == 1
    assert "redis down" in caplog.text


def test_provider_locks_are_dropped_when_unused(broadcaster):
    broadcaster.publish(1, "locked", slot(1, "2026-04-14 09:00"))
    stream = broadcaster.subscribe(2)

    assert broadcaster._provider_locks == {}
    assert stream.start_sequence == 0


def test_catch_up_stops_where_live_delivery_starts(system, provider_id):
    key = slot(provider_id, "2026-04-14 09:00")
    system.holds.acquire_hold(key, "sess-a")
    system.holds.release_hold(key, "sess-a")
    stream = system.subscribe(provider_id)
    system.holds.acquire_hold(key, "sess-b")

    missed = catch_up_events(system, stream, since=0)

    assert [e.sequence for e in missed] == [1, 2]
    assert [e.sequence for e in stream.drain()] == [3]
    assert stream.start_sequence == 2
    assert stream.last_sequence == 3
