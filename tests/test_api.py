"""Tests for the FastAPI REST endpoints and the viewer WebSocket."""

from __future__ import annotations

import time

import pytest

from fastapi.testclient import TestClient

from terminal_sessions.api.app import create_app
from terminal_sessions.api.fastapi_router import status_for
from terminal_sessions.api.websocket import dispatch
from terminal_sessions.errors import ShuttingDown
from terminal_sessions.services import TerminalSessions


@pytest.fixture
def client(config):
    with TestClient(create_app(config, ephemeral=True)) as c:
        yield c


def _create(client, tmp_path, me, command="sleep 30", name="job"):
    return client.post(
        "/api/sessions",
        json={"name": name, "command": command, "workingDirectory": str(tmp_path), "runAsIdentity": me},
    )


def _wait_status(client, session_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"/api/sessions/{session_id}").json()["data"]
        if data["status"] in statuses and data["exitCode"] is not None:
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"session {session_id} stuck in {data['status']}")
        time.sleep(0.05)


def _receive_until(ws, predicate, limit=200):
    for _ in range(limit):
        frame = ws.receive_json()
        if predicate(frame):
            return frame
    raise AssertionError("expected frame never arrived")


class TestRestEndpoints:
    def test_status(self, client):
        body = client.get("/api/status").json()
        assert body["name"] == "terminal-sessions"
        assert body["version"] == "0.1.0"

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "ok"
        assert body["sessions"]["total"] == 0
        assert body["memory"]["rss"] > 0

    def test_users(self, client, me):
        body = client.get("/api/users").json()
        assert me in body["data"]

    def test_create_and_complete(self, client, tmp_path, me):
        response = _create(client, tmp_path, me, command="echo hi")
        assert response.status_code == 200
        session = response.json()["data"]
        assert session["runAsIdentity"] == me
        assert session["workingDirectory"] == str(tmp_path)

        data = _wait_status(client, session["id"], {"completed"})

        assert data["exitCode"] == 0
        replay = client.get(f"/api/sessions/{session['id']}/replay").json()["data"]["buffer"]
        assert "hi" in "".join(replay)
        assert [s["id"] for s in client.get("/api/sessions").json()["data"]] == [session["id"]]

    def test_create_missing_name(self, client, tmp_path, me):
        response = client.post("/api/sessions", json={"workingDirectory": str(tmp_path), "runAsIdentity": me})
        assert response.status_code == 400

    def test_spawn_error(self, client, tmp_path, me):
        response = client.post(
            "/api/sessions",
            json={"name": "x", "workingDirectory": str(tmp_path / "missing"), "runAsIdentity": me},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "spawn_error"
        assert client.get("/api/sessions").json()["data"] == []

    def test_capacity(self, client, tmp_path, me):
        assert _create(client, tmp_path, me, name="a").status_code == 200
        assert _create(client, tmp_path, me, name="b").status_code == 200

        response = _create(client, tmp_path, me, name="c")

        assert response.status_code == 429
        assert response.json() == {
            "ok": False,
            "error": {
                "code": "capacity_exceeded",
                "sessionId": None,
                "message": "maximum number of sessions (2) reached",
            },
        }

    def test_unknown_session(self, client):
        response = client.get("/api/sessions/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "no_such_session"
        assert client.post("/api/sessions/missing/stop").status_code == 404
        assert client.delete("/api/sessions/missing").status_code == 404
        assert client.get("/api/sessions/missing/replay").status_code == 404

    def test_input_to_inactive_session(self, client):
        response = client.post("/api/sessions/missing/input", json={"data": "ls\n"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "session_not_active"

    def test_bad_resize(self, client, tmp_path, me):
        session = _create(client, tmp_path, me).json()["data"]
        response = client.post(f"/api/sessions/{session['id']}/resize", json={"cols": "wide"})
        assert response.status_code == 400
        ok = client.post(f"/api/sessions/{session['id']}/resize", json={"cols": 120, "rows": 40})
        assert ok.json() == {"ok": True}

    def test_stop_and_delete(self, client, tmp_path, me):
        session = _create(client, tmp_path, me).json()["data"]

        stopped = client.post(f"/api/sessions/{session['id']}/stop").json()
        assert stopped["data"]["stopped"] is True
        data = _wait_status(client, session["id"], {"stopped"})
        assert data["status"] == "stopped"

        again = client.post(f"/api/sessions/{session['id']}/stop").json()
        assert again["data"]["stopped"] is False

        assert client.delete(f"/api/sessions/{session['id']}").json() == {"ok": True}
        assert client.get(f"/api/sessions/{session['id']}").status_code == 404


class TestTerminalWebSocket:
    def test_connect_and_list(self, client):
        with client.websocket_connect("/ws/terminal") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "message"
            assert hello["viewerId"]

            ws.send_json({"type": "session:list", "requestId": "r1"})
            reply = _receive_until(ws, lambda f: f.get("requestId") == "r1")

            assert reply == {"type": "session:list", "ok": True, "sessions": [], "requestId": "r1"}

    def test_attach_input_and_stop(self, client, tmp_path, me):
        with client.websocket_connect("/ws/terminal") as ws:
            ws.receive_json()
            ws.send_json({
                "type": "session:create",
                "requestId": "c1",
                "name": "cat",
                "command": "cat",
                "workingDirectory": str(tmp_path),
                "runAsIdentity": me,
            })
            created = _receive_until(ws, lambda f: f.get("requestId") == "c1")
            assert created["ok"] is True
            session_id = created["session"]["id"]

            ws.send_json({"type": "session:attach", "sessionId": session_id})
            attached = _receive_until(ws, lambda f: f["type"] == "session:attached")
            assert attached["sessionId"] == session_id
            assert attached["connectedClients"] == 1
            assert isinstance(attached["buffer"], list)

            ws.send_json({"type": "terminal:resize", "sessionId": session_id, "cols": 100, "rows": 30})
            ws.send_json({"type": "terminal:input", "sessionId": session_id, "data": "ping\n"})
            output = _receive_until(ws, lambda f: f["type"] == "terminal:output" and "ping" in f["data"])
            assert output["sessionId"] == session_id

            ws.send_json({"type": "session:stop", "sessionId": session_id, "requestId": "s1"})
            stopped = _receive_until(ws, lambda f: f.get("requestId") == "s1")
            assert stopped["stopped"] is True

            exited = _receive_until(ws, lambda f: f["type"] == "session:exited")
            assert exited["status"] == "stopped"
            assert exited["session"]["id"] == session_id

            ws.send_json({"type": "terminal:input", "sessionId": session_id, "data": "x", "requestId": "i1"})
            error = _receive_until(ws, lambda f: f.get("requestId") == "i1")
            assert error["type"] == "error"
            assert error["request"] == "terminal:input"
            assert error["code"] == "session_not_active"

    def test_detach_without_attach(self, client):
        with client.websocket_connect("/ws/terminal") as ws:
            ws.receive_json()
            ws.send_json({"type": "session:detach", "sessionId": "missing", "requestId": "d1"})
            reply = _receive_until(ws, lambda f: f.get("requestId") == "d1")
            assert reply["ok"] is True
            assert reply["attached"] is False

    def test_errors(self, client):
        with client.websocket_connect("/ws/terminal") as ws:
            ws.receive_json()

            ws.send_json({"type": "session:attach", "sessionId": "missing", "requestId": "a1"})
            error = _receive_until(ws, lambda f: f.get("requestId") == "a1")
            assert error["type"] == "error"
            assert error["code"] == "no_such_session"
            assert error["sessionId"] == "missing"

            ws.send_json({"type": "session:attach", "requestId": "a2"})
            error = _receive_until(ws, lambda f: f.get("requestId") == "a2")
            assert error["code"] == "invalid_request"

            ws.send_json({"type": "bogus", "requestId": "b1"})
            error = _receive_until(ws, lambda f: f.get("requestId") == "b1")
            assert error["code"] == "unknown_request"

            ws.send_text("not json")
            error = _receive_until(ws, lambda f: f["type"] == "error")
            assert error["code"] == "invalid_request"

    def test_lifecycle_events_reach_every_client(self, client, tmp_path, me):
        with client.websocket_connect("/ws/events") as events:
            session = _create(client, tmp_path, me, command="true").json()["data"]

            created = _receive_until(events, lambda f: f["type"] == "session:created")
            assert created["sessionId"] == session["id"]
            status = _receive_until(events, lambda f: f["type"] == "session:status")
            assert status["status"] == "completed"
            assert status["exitCode"] == 0


class TestShutdownRejections:
    def test_status_code(self):
        assert status_for(ShuttingDown(None, "server is shutting down")) == 503

    @pytest.mark.asyncio
    async def test_create_after_shutdown_gets_error_frame(self, config, tmp_path, me):
        svc = TerminalSessions(config, ephemeral=True)
        await svc.start()
        await svc.shutdown()
        viewer = svc.multiplexer.connect("v1")

        await dispatch(svc, viewer, {
            "type": "session:create",
            "requestId": "c1",
            "name": "late",
            "command": "true",
            "workingDirectory": str(tmp_path),
            "runAsIdentity": me,
        })

        frame = viewer.queue.get_nowait()
        assert frame["type"] == "error"
        assert frame["request"] == "session:create"
        assert frame["code"] == "shutting_down"
        assert frame["requestId"] == "c1"
