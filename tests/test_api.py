"""HTTP and WebSocket surface of the queue service."""

from fastapi.testclient import TestClient

from main import create_app


def _call(client, code="O001", window=1):
    return client.post("/calls", json={"window": window, "code": code}).json()


def test_root_and_health(client):
    root = client.get("/")
    assert root.status_code == 200
    assert [c["tag"] for c in root.json()["categories"]] == ["O", "L", "P"]

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["database"] == "connected"
    assert health["redis"] == "unavailable"


def test_generate_ticket(client):
    first = client.post("/tickets", json={"category": "O"})
    second = client.post("/tickets", json={"category": "O"})

    assert first.status_code == 200
    assert first.json()["code"] == "O001"
    assert second.json()["code"] == "O002"


def test_generate_invalid_category(client):
    response = client.post("/tickets", json={"category": "Z"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_category"


def test_malformed_body_is_invalid_payload(client):
    response = client.post("/calls", json={"window": "abc", "code": "O001"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_payload"

    response = client.post("/calls/requirements", json={"requirements": "blood", "id": "x"})
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_payload"


def test_call_errors(client):
    missing = client.post("/calls", json={"window": 1, "code": "O001"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "ticket_not_found"

    client.post("/tickets", json={"category": "L"})
    wrong_window = client.post("/calls", json={"window": 1, "code": "L001"})
    assert wrong_window.status_code == 400
    assert wrong_window.json()["error"] == "invalid_window"


def test_full_visit_over_http(client):
    client.post("/tickets", json={"category": "O"})
    call = _call(client)
    assert client.get("/calls/pending-by-window").json() == {"1": "O001"}

    routed = client.post(
        "/calls/requirements",
        json={"code": "O001", "window": 1, "requirements": ["blood", " blood ", "urine"]},
    )
    assert routed.status_code == 200
    assert routed.json()["requirements"] == ["blood", "urine"]
    assert client.get("/calls/pending-by-window").json() == {}

    busy = client.post(f"/calls/{call['id']}/in-progress", json={"requirement": "blood"})
    assert busy.json()["current_requirement"] == "blood"

    client.post(f"/calls/{call['id']}/complete", json={"requirement": "blood"})
    removed = client.post(f"/calls/{call['id']}/remove-requirement", json={"requirement": "urine"})
    assert removed.json()["closed"] is True

    state = client.get("/state").json()
    assert state["recent_calls"] == []
    assert state["counters"]["O"] == 1
    assert client.get("/calls/consultation", params={"only_pending": True}).json() == []

    again = client.post("/calls/finalize", json={"id": call["id"]})
    assert again.status_code == 404
    assert again.json()["error"] == "call_not_found"


def test_requirement_errors(client):
    client.post("/tickets", json={"category": "O"})
    call = _call(client)
    client.post("/calls/requirements", json={"id": call["id"], "requirements": ["blood"]})

    response = client.post(f"/calls/{call['id']}/complete", json={"requirement": "xray"})
    assert response.status_code == 404
    assert response.json()["error"] == "requirement_not_found"

    response = client.post("/calls/requirements", json={"requirements": ["blood"], "edit": True})
    assert response.status_code == 404
    assert response.json()["error"] == "call_not_found"


def test_finalize_by_code(client):
    client.post("/tickets", json={"category": "O"})
    call = _call(client)

    response = client.post("/calls/finalize", json={"code": "O001"})
    assert response.status_code == 200
    assert response.json()["id"] == call["id"]

    response = client.post("/calls/finalize", json={})
    assert response.status_code == 400


def _next_event(ws, name):
    # Events issued before the connection may still arrive after the snapshot.
    while True:
        message = ws.receive_json()
        if message["event"] == name:
            return message


def test_websocket_gets_snapshot_then_events(client):
    client.post("/tickets", json={"category": "O"})

    with client.websocket_connect("/ws") as ws:
        initial = ws.receive_json()
        assert initial["event"] == "initial-state"
        assert initial["data"]["queue"]["O"] == ["O001"]
        assert initial["data"]["recent_calls"] == []

        client.post("/calls", json={"window": 2, "code": "O001"})
        called = _next_event(ws, "ticket-called")
        assert called["data"]["window"] == 2
        updated = ws.receive_json()
        assert updated["event"] == "queue-updated"
        assert updated["data"]["queue"]["O"] == []

        ws.send_text("ping")
        assert ws.receive_text() == "pong"


def test_state_survives_restart(settings):
    with TestClient(create_app(settings)) as first:
        first.post("/tickets", json={"category": "O"})
        first.post("/tickets", json={"category": "O"})
        first.post("/calls", json={"window": 1, "code": "O001"})

    with TestClient(create_app(settings)) as second:
        assert second.get("/state").json()["queue"]["O"] == ["O002"]
        assert second.post("/tickets", json={"category": "O"}).json()["code"] == "O003"
