import json
from datetime import datetime
from unittest.mock import MagicMock

from slotkeeper.errors import OperationTimeout

from conftest import WEEKDAYS_9_TO_12, slot


def headers(session="sess-a", client="alice", role=None):
    h = {"X-Session-Id": session, "X-Client-Id": client}
    if role:
        h["X-Actor-Role"] = role
    return h


def open_starts(client, provider_id, day="2026-04-14"):
    resp = client.get(f"/providers/{provider_id}/availability", params={"start_date": day})
    assert resp.status_code == 200
    return [s["start"][11:16] for s in resp.json()["slots"]]


# ── Hold → confirm flow ─────────────────────────────────────────────────


def test_two_clients_race_for_one_slot(client, tuesday_provider_id):
    pid = tuesday_provider_id
    nine = slot(pid, "2026-04-14 09:00").encode()
    assert open_starts(client, pid) == ["09:00", "09:30"]

    resp = client.post("/holds/", json={"slot_key": nine}, headers=headers("sess-a", "alice"))
    assert resp.status_code == 201
    assert resp.json()["holder_session_id"] == "sess-a"

    resp = client.post("/holds/", json={"slot_key": nine}, headers=headers("sess-b", "bob"))
    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["reason"] == "LockedByOther"
    assert [a["slot_key"] for a in detail["alternatives"]] == [slot(pid, "2026-04-14 09:30").encode()]

    resp = client.post("/bookings/confirm", json={"slot_key": nine}, headers=headers("sess-a", "alice"))
    assert resp.status_code == 201
    booking = resp.json()
    assert booking["status"] == "confirmed"
    assert booking["client_id"] == "alice"

    assert open_starts(client, pid) == ["09:30"]
    assert client.get(f"/holds/{nine}").status_code == 404


def test_confirm_without_hold_is_404(client, provider_id):
    key = slot(provider_id, "2026-04-14 09:00").encode()
    resp = client.post("/bookings/confirm", json={"slot_key": key}, headers=headers())
    assert resp.status_code == 404
    assert resp.json()["detail"]["reason"] == "NotFound"


def test_hold_outside_schedule_is_422(client, provider_id):
    key = slot(provider_id, "2026-04-14 13:00").encode()
    resp = client.post("/holds/", json={"slot_key": key}, headers=headers())
    assert resp.status_code == 422
    assert resp.json()["detail"]["reason"] == "OutsideSchedule"


def test_extend_and_release_hold(client, provider_id):
    key = slot(provider_id, "2026-04-14 09:00").encode()
    client.post("/holds/", json={"slot_key": key}, headers=headers())

    resp = client.patch(f"/holds/{key}", json={"ttl_seconds": 600}, headers=headers())
    assert resp.status_code == 200
    assert resp.json()["version"] == 2

    assert client.patch(f"/holds/{key}", json={}, headers=headers("sess-b")).status_code == 409

    resp = client.delete(f"/holds/{key}", headers=headers())
    assert resp.json() == {"detail": "released"}


def test_missing_session_header_is_rejected(client, provider_id):
    key = slot(provider_id, "2026-04-14 09:00").encode()
    resp = client.post("/holds/", json={"slot_key": key})
    assert resp.status_code == 422


def test_malformed_slot_key_is_400(client):
    resp = client.post("/holds/", json={"slot_key": "not-a-slot"}, headers=headers())
    assert resp.status_code == 400


def test_operation_timeout_maps_to_503(client, system, provider_id, monkeypatch):
    def timeout(*args, **kwargs):
        raise OperationTimeout("Timed out waiting for slot")

    monkeypatch.setattr(system.holds, "acquire_hold", timeout)
    key = slot(provider_id, "2026-04-14 09:00").encode()

    resp = client.post("/holds/", json={"slot_key": key}, headers=headers())

    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "1"
    assert resp.json()["detail"]["reason"] == "OperationTimeout"


# ── Booking lifecycle ───────────────────────────────────────────────────


def confirmed_booking(client, provider_id, start="2026-04-14 09:00"):
    key = slot(provider_id, start).encode()
    client.post("/holds/", json={"slot_key": key}, headers=headers())
    resp = client.post("/bookings/confirm", json={"slot_key": key}, headers=headers())
    assert resp.status_code == 201
    return resp.json()


def test_late_cancel_needs_admin_override(client, clock, provider_id):
    booking = confirmed_booking(client, provider_id)
    clock.now = datetime(2026, 4, 13, 10, 0)

    resp = client.post(f"/bookings/{booking['id']}/cancel", json={}, headers=headers())
    assert resp.status_code == 403
    assert resp.json()["detail"]["reason"] == "TooLateToCancel"

    resp = client.post(
        f"/bookings/{booking['id']}/cancel",
        json={"reason": "provider sick"},
        headers=headers(client="admin-1", role="admin"),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["refund_eligible"] is False
    assert body["booking"]["status"] == "cancelled"
    assert body["booking"]["cancel_reason"] == "provider sick"


def test_cancel_with_stale_version_is_409(client, provider_id):
    booking = confirmed_booking(client, provider_id)

    resp = client.post(f"/bookings/{booking['id']}/cancel", json={"version": 7}, headers=headers())

    assert resp.status_code == 409
    assert resp.json()["detail"]["reason"] == "StaleVersion"


def test_reschedule_endpoint(client, provider_id):
    booking = confirmed_booking(client, provider_id)
    new_key = slot(provider_id, "2026-04-15 10:00").encode()
    client.post("/holds/", json={"slot_key": new_key}, headers=headers())

    resp = client.post(f"/bookings/{booking['id']}/reschedule", json={"slot_key": new_key}, headers=headers())

    assert resp.status_code == 201
    assert resp.json()["rescheduled_from_id"] == booking["id"]
    assert client.get(f"/bookings/{booking['id']}").json()["status"] == "cancelled"
    assert len(client.get("/bookings/", params={"status": "confirmed"}).json()) == 1


def test_bookings_cannot_be_patched_or_deleted(client, provider_id):
    booking = confirmed_booking(client, provider_id)
    assert client.patch(f"/bookings/{booking['id']}", json={}).status_code == 405
    assert client.delete(f"/bookings/{booking['id']}").status_code == 405


# ── Providers / blocks ──────────────────────────────────────────────────


def test_provider_crud(client):
    resp = client.post(
        "/providers/",
        json={"name": "Dr. Who", "timezone": "Europe/Berlin", "work_schedule": json.dumps(WEEKDAYS_9_TO_12)},
    )
    assert resp.status_code == 201
    pid = resp.json()["id"]

    assert client.patch(f"/providers/{pid}", json={"timezone": "Mars/Olympus"}).status_code == 422
    assert client.patch(f"/providers/{pid}", json={"name": "Dr. Who II"}).json()["name"] == "Dr. Who II"

    assert client.delete(f"/providers/{pid}").status_code == 204
    assert pid not in [p["id"] for p in client.get("/providers/").json()]
    assert client.get(f"/providers/{pid}/availability").status_code == 404


def test_block_removes_slots_and_invalidates_cache(client, system, provider_id):
    redis = MagicMock()
    redis.scan_iter.return_value = []
    system.redis = redis

    resp = client.post(
        f"/providers/{provider_id}/blocks",
        json={"start_at": "2026-04-14T09:00:00", "end_at": "2026-04-14T11:00:00"},
    )
    assert resp.status_code == 201
    redis.scan_iter.assert_called_with(f"slots:day:{provider_id}:2026-04-14:*")

    system.redis = None
    assert open_starts(client, provider_id) == ["11:00", "11:30"]

    block_id = resp.json()["id"]
    assert client.delete(f"/providers/{provider_id}/blocks/{block_id}").status_code == 204
    assert len(open_starts(client, provider_id)) == 6


def test_block_with_inverted_range_is_rejected(client, provider_id):
    resp = client.post(
        f"/providers/{provider_id}/blocks",
        json={"start_at": "2026-04-14T11:00:00", "end_at": "2026-04-14T09:00:00"},
    )
    assert resp.status_code == 422


def test_calendar_counts_open_slots(client, tuesday_provider_id):
    resp = client.get(
        f"/providers/{tuesday_provider_id}/calendar",
        params={"start_date": "2026-04-13", "end_date": "2026-04-14"},
    )
    assert resp.status_code == 200
    days = {d["date"]: d["open_slots_count"] for d in resp.json()["days"]}
    assert days == {"2026-04-13": 0, "2026-04-14": 2}


def test_availability_outside_horizon_is_400(client, provider_id):
    resp = client.get(f"/providers/{provider_id}/availability", params={"start_date": "2027-01-01"})
    assert resp.status_code == 400


# ── Waitlist / recurrence / events ──────────────────────────────────────


def test_waitlist_endpoints(client, provider_id):
    booking = confirmed_booking(client, provider_id)
    key = slot(provider_id, "2026-04-14 09:00").encode()

    resp = client.post("/waitlist/", json={"slot_key": key}, headers=headers("sess-b", "bob"))
    assert resp.status_code == 201

    client.post(f"/bookings/{booking['id']}/cancel", json={}, headers=headers())

    (entry,) = client.get(f"/waitlist/{key}").json()
    assert entry["client_id"] == "bob"
    assert entry["offer_expires_at"] is not None

    resp = client.delete(f"/waitlist/{key}", headers=headers("sess-b", "bob"))
    assert resp.json() == {"detail": "withdrawn"}


def test_recurrence_endpoint(client, provider_id):
    resp = client.post(
        "/recurrences/expand",
        json={
            "slot_key": slot(provider_id, "2026-04-14 09:00").encode(),
            "frequency": "weekly",
            "occurrence_count": 2,
        },
        headers=headers(),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["booked_count"] == 2
    assert body["series_id"]
    assert [o["outcome"] for o in body["occurrences"]] == ["Booked", "Booked"]


def test_recurrence_requires_exactly_one_bound(client, provider_id):
    resp = client.post(
        "/recurrences/expand",
        json={"slot_key": slot(provider_id, "2026-04-14 09:00").encode(), "frequency": "weekly"},
        headers=headers(),
    )
    assert resp.status_code == 422


def test_event_replay_endpoint(client, provider_id):
    confirmed_booking(client, provider_id)

    resp = client.get(f"/events/{provider_id}", params={"since": 0})
    body = resp.json()
    assert [e["type"] for e in body["events"]] == ["locked", "booked"]
    assert body["last_sequence"] == 2
    # booked is addressed to the booking client
    assert body["events"][1]["client_id"] is None

    mine = client.get(f"/events/{provider_id}", params={"since": 1}, headers={"X-Client-Id": "alice"}).json()
    assert mine["events"][0]["client_id"] == "alice"


def test_event_stream_for_unknown_provider_is_404(client):
    assert client.get("/events/999/stream").status_code == 404


def test_health_without_redis(client):
    assert client.get("/health").json() == {"redis": None}
