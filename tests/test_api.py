from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from roamingbridge.api import create_app
from roamingbridge.core.diff import DiffEngine

from .conftest import T0

API_KEY = "test-key"
HEADERS = {"X-API-Key": API_KEY}
E1 = "DE*GEF*E1"


@pytest.fixture
def client(dispatcher, lifecycle, clock):
    app = create_app(dispatcher, DiffEngine(lifecycle, clock=clock), api_key=API_KEY)
    with TestClient(app) as client:
        yield client


def post(client, path, body):
    return client.post(f"/api/v1{path}", json=body, headers=HEADERS)


def get(client, path, **params):
    return client.get(f"/api/v1{path}", params=params, headers=HEADERS)


def test_health_needs_no_key(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["entities"] == 2


def test_key_is_required(client):
    assert client.get("/api/v1/status").status_code == 401
    assert client.get("/api/v1/status", headers={"X-API-Key": "wrong"}).status_code == 401


def test_reserve_start_stop_flow(client, clock):
    reserved = post(
        client,
        "/reserve",
        {"entityId": E1, "durationSecs": 1800, "authorization": {"tokens": ["TAG-1"]}},
    )
    assert reserved.status_code == 200
    assert reserved.json()["outcome"] == "Success"
    reservation_id = reserved.json()["reservation"]["reservation_id"]

    clock.advance(minutes=5)
    started = post(client, "/start", {"entityId": E1, "credential": {"value": "TAG-1"}})
    assert started.status_code == 200
    assert started.json()["prior_state"] == "Reserved"
    assert started.json()["state"] == "Charging"
    session_id = started.json()["session_id"]

    clock.advance(minutes=15)
    stopped = post(
        client,
        "/stop",
        {
            "sessionId": session_id,
            "samples": [
                {"timestamp": (T0 + timedelta(minutes=5)).isoformat(), "wh": 0},
                {"timestamp": (T0 + timedelta(minutes=10)).isoformat(), "wh": 500},
                {"timestamp": (T0 + timedelta(minutes=20)).isoformat(), "wh": 1200},
            ],
        },
    )
    assert stopped.status_code == 200
    record = stopped.json()["record"]
    assert record["consumed_energy"] == pytest.approx(1.2)
    assert record["reservation_id"] == reservation_id
    assert record["duration_secs"] == 900

    records = get(
        client,
        "/cdrs",
        start=T0.isoformat(),
        end=(T0 + timedelta(hours=1)).isoformat(),
    )
    assert records.status_code == 200
    assert [r["session_id"] for r in records.json()["records"]] == [session_id]


def test_business_failures_map_to_http_codes(client):
    assert post(client, "/start", {"entityId": E1}).status_code == 200

    again = post(client, "/start", {"entityId": E1})
    stranger = post(client, "/start", {"entityId": "DE*GEF*E99"})

    assert again.status_code == 409
    assert again.json()["detail"]["outcome"] == "Conflict"
    assert stranger.status_code == 404
    assert stranger.json()["detail"]["outcome"] == "UnknownTarget"


def test_malformed_identifier_is_a_bad_request(client):
    assert get(client, "/evses/not-an-evse").status_code == 400
    assert post(client, "/reserve", {"entityId": "nope"}).status_code == 400


def test_request_validation(client):
    assert post(client, "/reserve", {"entityId": E1, "durationSecs": -5}).status_code == 422
    assert post(client, "/stop", {}).status_code == 400
    assert post(client, "/cancel-reservation", {}).status_code == 400


def test_cancel_reservation_by_id(client):
    reserved = post(client, "/reserve", {"entityId": E1, "durationSecs": 600})
    reservation_id = reserved.json()["reservation"]["reservation_id"]

    cancelled = post(client, "/cancel-reservation", {"reservationId": reservation_id})
    unknown = post(client, "/cancel-reservation", {"reservationId": reservation_id})

    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "Free"
    assert unknown.status_code == 404


def test_correlation_id_replay(client):
    first = post(client, "/start", {"entityId": E1, "correlationId": "c-1"})
    second = post(client, "/start", {"entityId": E1, "correlationId": "c-1"})

    assert second.status_code == 200
    assert second.json()["session_id"] == first.json()["session_id"]


def test_status_and_entity_views(client):
    post(client, "/start", {"entityId": E1})

    status = get(client, "/status")
    entity = get(client, f"/evses/{E1}")

    assert status.json()[E1]["kind"] == "Charging"
    assert status.json()["DE*GEF*E2"]["kind"] == "Available"
    assert entity.json()["state"] == "Charging"
    assert entity.json()["session_id"] is not None
    assert get(client, "/evses/DE*GEF*E99").status_code == 404
    assert get(client, "/status", operator="DE*ICE").json() == {}


def test_schedule_window(client, clock):
    clock.advance(minutes=10)
    post(client, "/start", {"entityId": E1})

    window = get(
        client,
        f"/evses/{E1}/schedule",
        start=T0.isoformat(),
        end=(T0 + timedelta(minutes=10)).isoformat(),
    )

    assert [v["kind"] for v in window.json()] == ["Available"]
    assert get(
        client,
        f"/evses/{E1}/schedule",
        start=(T0 + timedelta(hours=1)).isoformat(),
        end=T0.isoformat(),
    ).status_code == 400


def test_admin_status(client):
    changed = post(client, f"/evses/{E1}/admin-status", {"adminStatus": "OutOfService"})
    refused = post(client, "/reserve", {"entityId": E1})

    assert changed.status_code == 200
    assert changed.json()["admin_status"] == "OutOfService"
    assert changed.json()["status"]["kind"] == "OutOfService"
    assert refused.status_code == 409
    assert refused.json()["detail"]["outcome"] == "OutOfService"


def test_admin_status_of_unknown_evse(client, lifecycle):
    before = len(lifecycle.locks)

    response = post(client, "/evses/DE*GEF*E99/admin-status", {"adminStatus": "OutOfService"})

    assert response.status_code == 404
    assert len(lifecycle.locks) == before


def test_diff_peek_and_take(client):
    peeked = get(client, "/diff")
    peeked_again = get(client, "/diff", take="true")
    taken = post(client, "/diff/take", None)
    after = get(client, "/diff")

    assert set(peeked.json()["new_status"]) == {E1, "DE*GEF*E2"}
    assert set(peeked_again.json()["new_status"]) == {E1, "DE*GEF*E2"}
    assert set(taken.json()["new_status"]) == {E1, "DE*GEF*E2"}
    assert after.json()["new_status"] == {}
    assert after.json()["changed_status"] == {}
