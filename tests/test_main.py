"""Tests for the FastAPI surface."""
from __future__ import annotations

import os
import tempfile
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("LOG_DIRECTORY", tempfile.mkdtemp(prefix="monitor-logs-"))

from observatory.app import main  # noqa: E402


@pytest.fixture
def client():
    # no context manager: startup hooks would dial the real N.I.N.A. host
    return TestClient(main.app, raise_server_exceptions=False)


class TestHttpEndpoints:
    """Plain HTTP endpoints."""

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "connectionStatus": "Disconnected"}

    def test_state_is_complete(self, client):
        state = client.get("/api/state").json()
        assert "camera" in state["equipment"]
        assert state["equipment"]["camera"]["connected"] is False
        assert state["revision"] == main.manager.snapshot.revision

    def test_status(self, client):
        status = client.get("/api/status").json()
        assert status["stream"]["url"].endswith("/v2/socket")
        assert set(status["events"]) == {"applied", "unchanged", "discarded", "violations", "queued"}

    def test_reset_without_body(self, client, monkeypatch):
        reset = AsyncMock()
        monkeypatch.setattr(main.manager, "request_reset", reset)
        response = client.post("/api/session/reset")
        assert response.status_code == 202
        assert response.json() == {"status": "queued", "reason": "manual"}
        reset.assert_awaited_once_with("manual")

    def test_reset_with_reason(self, client, monkeypatch):
        reset = AsyncMock()
        monkeypatch.setattr(main.manager, "request_reset", reset)
        response = client.post("/api/session/reset", json={"reason": "new night"})
        assert response.json()["reason"] == "new night"
        reset.assert_awaited_once_with("new night")

    def test_reset_with_invalid_body(self, client):
        response = client.post("/api/session/reset", json={"reason": ["nope"]})
        assert response.status_code == 422

    def test_refresh(self, client, monkeypatch):
        monkeypatch.setattr(main.manager, "refresh", AsyncMock(return_value={"seeded": 4, "polled": 10}))
        response = client.post("/api/session/refresh")
        assert response.json() == {"status": "ok", "seeded": 4, "polled": 10}

    def test_unhandled_error_returns_500(self, client, monkeypatch):
        def boom():
            raise RuntimeError("fold exploded")

        monkeypatch.setattr(main.manager, "status", boom)
        response = client.get("/api/status")
        assert response.status_code == 500
        assert "fold exploded" in response.text


class TestStateSocket:
    """The UI subscription socket."""

    def test_first_message_is_snapshot(self, client):
        with client.websocket_connect("/ws/state") as ws:
            message = ws.receive_json()
        assert message["type"] == "snapshot"
        assert message["revision"] == main.manager.snapshot.revision
        assert "safetyMonitor" in message["state"]["equipment"]
