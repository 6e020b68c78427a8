"""HTTP surface tests using FastAPI's TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from main import create_app


@pytest.fixture
def make_client(db_dir, monkeypatch):
    """Return a factory building a TestClient after applying env overrides."""
    clients = []

    def _make(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        client = TestClient(create_app())
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    # No suppression windows so exit scans can follow immediately.
    return make_client(QC_SCAN_COOLDOWN_MS="0", QC_IMMEDIATE_REPEAT_MS="0")


def _start(client, worker_id="W-1"):
    response = client.post("/sessions", json={"worker_id": worker_id})
    assert response.status_code == 200
    return response.json()["session"]["id"]


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "db_initialized": True, "active_sessions": 0}


def test_duplicate_session_is_conflict(client):
    session_id = _start(client)

    response = client.post("/sessions", json={"worker_id": "W-1"})

    assert response.status_code == 409
    assert response.json()["detail"]["session_id"] == session_id


def test_scan_round_trip_and_item_lookup(client):
    session_id = _start(client)

    entry = client.post(f"/sessions/{session_id}/scans", json={"code": "ABC123", "scan_record_id": 1})
    exit_ = client.post(
        f"/sessions/{session_id}/scans",
        json={"code": "ABC123", "scan_record_id": "2", "quality": {"rating": 5}},
    )

    assert entry.json()["type"] == "entrance_started"
    assert entry.json()["success"] is True
    body = exit_.json()
    assert body["type"] == "exit_completed"
    assert body["item"]["quality_rating"] == 5
    assert body["item"]["start_scan_ref"] == "1"

    item = client.get(f"/items/{body['item']['id']}").json()
    assert item["item"]["status"] == "completed"
    assert [e["action"] for e in item["audit"]] == ["created", "completed"]


def test_duplicate_scan_is_ignored(make_client):
    client = make_client()
    session_id = _start(client)
    client.post(f"/sessions/{session_id}/scans", json={"code": "ABC123", "scan_record_id": 1})

    response = client.post(f"/sessions/{session_id}/scans", json={"code": "ABC123", "scan_record_id": 2})

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "reason": "immediate_repeat"}


def test_invalid_quality_is_bad_request(client):
    session_id = _start(client)

    response = client.post(
        f"/sessions/{session_id}/scans",
        json={"code": "ABC123", "scan_record_id": 1, "quality": {"defects_found": True}},
    )

    assert response.status_code == 400


def test_overview_restart_and_end(client):
    session_id = _start(client)
    client.post(f"/sessions/{session_id}/scans", json={"code": "ITEM-X1", "scan_record_id": 1})

    overview = client.get(f"/sessions/{session_id}").json()
    restarted = client.post(f"/sessions/{session_id}/restart", json={"worker_id": "W-1"}).json()
    ended = client.post(f"/sessions/{session_id}/end", json={"worker_id": "W-1"}).json()
    ended_again = client.post(f"/sessions/{session_id}/end", json={}).json()

    assert overview["active_count"] == 1
    assert restarted["aborted_items"] == 1
    assert ended == {"session_id": session_id, "active": False, "aborted_items": 0}
    assert ended_again["aborted_items"] == 0


def test_badge_login(client):
    first = client.post("/sessions/badge", json={"worker_id": "W-7"}).json()
    second = client.post("/sessions/badge", json={"worker_id": "W-7"}).json()

    assert first["restarted"] is False
    assert second["restarted"] is True
    assert second["session"]["id"] == first["session"]["id"]


def test_abort_item(client):
    session_id = _start(client)
    entry = client.post(f"/sessions/{session_id}/scans", json={"code": "ITEM-X1", "scan_record_id": 1}).json()
    item_id = entry["item"]["id"]

    aborted = client.post(f"/items/{item_id}/abort", json={"reason": "Damaged in transit"}).json()
    again = client.post(f"/items/{item_id}/abort", json={}).json()

    assert aborted["aborted"] is True
    assert aborted["item"]["notes"] == "Damaged in transit"
    assert again["aborted"] is False


def test_unknown_resources_are_not_found(client):
    assert client.get("/sessions/999").status_code == 404
    assert client.post("/sessions/999/end", json={}).status_code == 404
    assert client.get("/items/999").status_code == 404


def test_active_sessions_recovered_on_startup(db_dir):
    with TestClient(create_app()) as first:
        session_id = _start(first)
        first.post(f"/sessions/{session_id}/scans", json={"code": "ITEM-X1", "scan_record_id": 1})

    with TestClient(create_app()) as second:
        assert second.get("/health").json()["active_sessions"] == 1
        overview = second.get(f"/sessions/{session_id}").json()

    assert overview["expectation"]["pending_codes"] == ["ITEM-X1"]
