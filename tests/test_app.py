"""Tests for the HTTP and WebSocket surface."""

import pytest
from fastapi.testclient import TestClient

from termbridge.config import TermBridgeConfig
from termbridge.parser.rules import default_rules
from termbridge.server.app import create_app


@pytest.fixture
def client(registry):
    app = create_app(TermBridgeConfig(), registry=registry, rules=default_rules())
    with TestClient(app) as c:
        yield c


class TestRest:
    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert data["clients"] == 0
        assert data["claudeAvailable"] is True

    def test_sessions_empty(self, client):
        assert client.get("/api/sessions").json() == {"sessions": []}

    def test_unknown_transcript(self, client):
        assert client.get("/api/sessions/session-404/messages").status_code == 404

    def test_sync_event_validation(self, client):
        response = client.post(
            "/api/sync-events", json={"type": "plan-delete", "event": "x", "filename": "a"}
        )
        assert response.status_code == 422


class TestWebSocket:
    def test_create_session_over_socket(self, client):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"type": "create-session", "payload": {"planPath": "p.md"}})
            created = ws.receive_json()

        assert created["type"] == "session-created"
        assert created["planPath"] == "p.md"

        sessions = client.get("/api/sessions").json()["sessions"]
        assert [s["session_id"] for s in sessions] == [created["sessionId"]]
        assert sessions[0]["active"] is True

        transcript = client.get(f"/api/sessions/{created['sessionId']}/messages").json()
        assert transcript == {
            "sessionId": created["sessionId"],
            "streaming": False,
            "messages": [],
        }

    def test_transcript_follows_session_output(self, client, spawner):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-session", "payload": {}})
            session_id = ws.receive_json()["sessionId"]

        transport = spawner.spawned[0]
        transport.emit("❯ hi\nansw".encode("utf-8"))
        live = client.get(f"/api/sessions/{session_id}/messages").json()
        assert live["streaming"] is False
        assert [m["role"] for m in live["messages"]] == ["user"]

        transport.emit(b"er")
        transport.finish(0)

        transcript = client.get(f"/api/sessions/{session_id}/messages").json()
        assert transcript["streaming"] is False
        assert [(m["role"], m["content"]) for m in transcript["messages"]] == [
            ("user", "hi"),
            ("assistant", "answer"),
        ]

        # The parser no longer listens once the session has exited
        transport.emit(b"late output\n")
        again = client.get(f"/api/sessions/{session_id}/messages").json()
        assert again["messages"] == transcript["messages"]

    def test_root_path_is_a_socket_too(self, client):
        with client.websocket_connect("/") as ws:
            assert ws.receive_json()["type"] == "connected"

    def test_sync_events_are_relayed_verbatim(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            response = client.post(
                "/api/sync-events",
                json={
                    "type": "plan-sync",
                    "event": "change",
                    "filename": "todo.md",
                    "status": "in-progress",
                    "extra": 1,
                },
            )
            assert response.json()["clients_notified"] == 1
            assert ws.receive_json() == {
                "type": "plan-sync",
                "event": "change",
                "filename": "todo.md",
                "status": "in-progress",
                "extra": 1,
            }

    def test_reconnect_with_session_id(self, client, spawner):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-session", "payload": {}})
            session_id = ws.receive_json()["sessionId"]

        with client.websocket_connect(f"/ws?sessionId={session_id}") as ws:
            assert ws.receive_json()["type"] == "connected"
            assert ws.receive_json() == {"type": "session-attached", "sessionId": session_id}

        assert len(spawner.spawned) == 1

    def test_shutdown_kills_sessions(self, registry, spawner):
        app = create_app(TermBridgeConfig(), registry=registry, rules=default_rules())
        with TestClient(app) as c:
            with c.websocket_connect("/ws") as ws:
                ws.receive_json()
                ws.send_json({"type": "create-session", "payload": {}})
                ws.receive_json()

        assert spawner.spawned[0].killed is True
        assert len(registry) == 0
