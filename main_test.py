"""Tests for main.py - FastAPI routes."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from capture_process import ExitOutcome
from config import Settings
from errors import AuthError, SpawnError
from stream_session import SessionController
from testing import FakeSupervisor, FakeTwitch


@pytest.fixture
def fakes():
    twitch = FakeTwitch(live={"bob": "Speedrun", "carol": "Chatting"})
    supervisor = FakeSupervisor()
    return twitch, supervisor


@pytest.fixture
def client(fakes):
    """Create test client around a controller with fake collaborators."""
    from fastapi.testclient import TestClient

    import main

    twitch, supervisor = fakes
    controller = SessionController(twitch, supervisor)
    app = main.create_app(controller=controller, settings=Settings())
    with TestClient(app) as client:
        yield client


class TestStart:
    def test_start_returns_202_and_state(self, client):
        resp = client.post("/sessions/bob")
        assert resp.status_code == 202
        body = resp.json()
        assert body["channel"] == "bob"
        assert body["state"] == "running"
        assert body["title"] == "Speedrun"

    def test_start_twice_conflict(self, client):
        client.post("/sessions/carol")
        resp = client.post("/sessions/carol")
        assert resp.status_code == 409
        assert resp.json()["error"] == "AlreadyActive"
        assert client.get("/sessions/carol").json()["state"] == "running"

    def test_start_offline_404(self, client):
        resp = client.post("/sessions/alice")
        assert resp.status_code == 404
        assert resp.json()["error"] == "ChannelOffline"

        failed = client.get("/sessions/alice")
        assert failed.status_code == 200
        assert failed.json()["state"] == "failed"
        assert failed.json()["last_error"] == "ChannelOffline"
        assert client.get("/sessions/alice").status_code == 404

    def test_start_auth_failure_502(self, client, fakes):
        twitch, _ = fakes
        twitch.errors["bob"] = AuthError("Token endpoint returned HTTP 403")
        resp = client.post("/sessions/bob")
        assert resp.status_code == 502
        assert resp.json()["error"] == "Auth"

    def test_start_spawn_failure_500(self, client, fakes):
        _, supervisor = fakes
        supervisor.spawn_error = SpawnError("Capture tool not found: streamlink", channel="bob")
        resp = client.post("/sessions/bob")
        assert resp.status_code == 500
        assert resp.json() == {
            "error": "Spawn",
            "detail": "Capture tool not found: streamlink",
            "channel": "bob",
        }


class TestStopAndStatus:
    def test_stop_then_status_stopped(self, client, fakes):
        _, supervisor = fakes
        client.post("/sessions/bob")
        resp = client.delete("/sessions/bob")
        assert resp.status_code == 200
        assert resp.json()["state"] == "stopped"
        assert supervisor.handles[0].terminated == 1
        assert client.get("/sessions/bob").json()["state"] == "stopped"

    def test_stop_unknown_404(self, client):
        resp = client.delete("/sessions/nobody")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotActive"

    def test_status_unknown_404(self, client):
        resp = client.get("/sessions/nobody")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFound"

    def test_crash_visible_in_status(self, client, fakes):
        _, supervisor = fakes
        client.post("/sessions/bob")
        supervisor.exit(supervisor.handles[0], ExitOutcome("non_zero_exit", 1))
        body = client.get("/sessions/bob").json()
        assert body["state"] == "failed"
        assert body["last_error"].startswith("ProcessCrashed")
        assert body["exit"] == {"kind": "non_zero_exit", "code": 1}


class TestList:
    def test_list_sessions(self, client):
        assert client.get("/sessions").json() == []
        client.post("/sessions/bob")
        client.post("/sessions/carol")
        channels = [s["channel"] for s in client.get("/sessions").json()]
        assert sorted(channels) == ["bob", "carol"]

    def test_health(self, client):
        client.post("/sessions/bob")
        assert client.get("/health").json() == {"ok": True, "sessions": 1}


class TestTwitchLive:
    def test_live_subset(self, client):
        resp = client.get("/twitch/live", params=[("channel", "bob"), ("channel", "alice")])
        assert resp.status_code == 200
        assert [s["channel"] for s in resp.json()] == ["bob"]


class TestLifespan:
    def test_shutdown_stops_sessions_and_revokes_token(self, fakes):
        from fastapi.testclient import TestClient

        import main

        twitch, supervisor = fakes
        controller = SessionController(twitch, supervisor)
        with TestClient(main.create_app(controller=controller, settings=Settings())) as client:
            client.post("/sessions/bob")
        assert supervisor.handles[0].terminated == 1
        assert supervisor.shut_down
        assert twitch.tokens.revoked


class TestBuildController:
    def test_wiring_from_settings(self, tmp_path):
        import main

        settings = Settings(
            client_id="id",
            client_secret="secret",
            capture_mode="play",
            capture_dir=str(tmp_path),
            grace_period=2.0,
        )
        controller = main.build_controller(settings)
        assert controller.twitch.tokens.client_id == "id"
        assert controller.supervisor.mode == "play"
        assert controller.supervisor.grace_period == 2.0

    def test_create_app_loads_settings(self):
        import main

        with patch("main.load_settings", return_value=Settings()) as load:
            main.create_app()
        load.assert_called_once()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
