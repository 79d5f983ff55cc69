"""Tests for twitch_auth.py - app access token management."""

from __future__ import annotations

from unittest.mock import patch

import io
import threading
import time
import urllib.error

import pytest

from errors import AuthError, TransientNetworkError
from twitch_auth import TOKEN_URL, Credential, TokenManager


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(TOKEN_URL, code, "error", {}, io.BytesIO(b"{}"))


def _manager(**kwargs) -> TokenManager:
    return TokenManager("client", "secret", sleep=lambda _: None, **kwargs)


class TestCredential:
    def test_usable_outside_margin(self):
        cred = Credential("tok", expires_at=1000.0)
        assert cred.is_usable(margin=60, now=900.0)

    def test_not_usable_inside_margin(self):
        cred = Credential("tok", expires_at=1000.0)
        assert not cred.is_usable(margin=60, now=950.0)
        assert not cred.is_usable(margin=60, now=1001.0)


class TestGetToken:
    def test_fetches_and_caches(self):
        tm = _manager()
        payload = {"access_token": "abc", "expires_in": 3600, "token_type": "bearer"}
        with patch("twitch_auth.request_json", return_value=payload) as req:
            first = tm.get_token()
            second = tm.get_token()
        assert first.access_token == "abc"
        assert first is second
        assert req.call_count == 1
        _, kwargs = req.call_args
        assert kwargs["method"] == "POST"
        assert kwargs["form"] == {
            "client_id": "client",
            "client_secret": "secret",
            "grant_type": "client_credentials",
        }

    def test_refreshes_inside_margin(self):
        tm = _manager()
        # 30s left is inside the 60s margin
        tm._credential = Credential("short", expires_at=time.time() + 30)
        with patch(
            "twitch_auth.request_json", return_value={"access_token": "long", "expires_in": 3600}
        ) as req:
            assert tm.get_token().access_token == "long"
        assert req.call_count == 1

    def test_never_returns_expired_token(self):
        tm = _manager()
        tm._credential = Credential("old", expires_at=time.time() - 5)
        with patch(
            "twitch_auth.request_json", return_value={"access_token": "new", "expires_in": 3600}
        ):
            cred = tm.get_token()
        assert cred.access_token == "new"
        assert cred.is_usable(tm.margin)

    def test_missing_config_is_auth_error(self):
        tm = TokenManager("", "")
        with patch("twitch_auth.request_json") as req, pytest.raises(AuthError):
            tm.get_token()
        req.assert_not_called()

    @pytest.mark.parametrize("code", [400, 401, 403, 500])
    def test_http_error_is_auth_error_not_retried(self, code):
        tm = _manager()
        with (
            patch("twitch_auth.request_json", side_effect=_http_error(code)) as req,
            pytest.raises(AuthError, match=str(code)),
        ):
            tm.get_token()
        assert req.call_count == 1

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            {"expires_in": 3600},
            {"access_token": "", "expires_in": 3600},
            {"access_token": "abc"},
            {"access_token": "abc", "expires_in": "soon"},
            {"access_token": "abc", "expires_in": 0},
        ],
    )
    def test_malformed_payload_is_auth_error(self, payload):
        tm = _manager()
        with (
            patch("twitch_auth.request_json", return_value=payload),
            pytest.raises(AuthError),
        ):
            tm.get_token()

    @pytest.mark.parametrize("expires_in", [1, 30, 60])
    def test_token_expiring_inside_margin_is_auth_error(self, expires_in):
        tm = _manager()
        payload = {"access_token": "short", "expires_in": expires_in}
        with (
            patch("twitch_auth.request_json", return_value=payload) as request,
            pytest.raises(AuthError, match="expiring within 60s"),
        ):
            tm.get_token()
        assert request.call_count == 1

    def test_non_json_body_is_auth_error(self):
        tm = _manager()
        with (
            patch("twitch_auth.request_json", side_effect=ValueError("not json")),
            pytest.raises(AuthError, match="malformed"),
        ):
            tm.get_token()

    def test_transient_failure_retried(self):
        sleeps: list[float] = []
        tm = TokenManager("client", "secret", sleep=sleeps.append)
        effects = [
            urllib.error.URLError("connection refused"),
            TimeoutError("timed out"),
            {"access_token": "abc", "expires_in": 3600},
        ]
        with patch("twitch_auth.request_json", side_effect=effects) as req:
            assert tm.get_token().access_token == "abc"
        assert req.call_count == 3
        assert len(sleeps) == 2

    def test_transient_failure_bounded(self):
        tm = _manager()
        with (
            patch(
                "twitch_auth.request_json", side_effect=urllib.error.URLError("down")
            ) as req,
            pytest.raises(TransientNetworkError),
        ):
            tm.get_token()
        assert req.call_count == 3

    def test_failed_refresh_can_be_retried_later(self):
        tm = _manager()
        with (
            patch("twitch_auth.request_json", side_effect=_http_error(500)),
            pytest.raises(AuthError),
        ):
            tm.get_token()
        with patch(
            "twitch_auth.request_json", return_value={"access_token": "ok", "expires_in": 3600}
        ):
            assert tm.get_token().access_token == "ok"


class TestCoalescing:
    def test_concurrent_callers_share_one_refresh(self):
        tm = _manager()
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_fetch(*args, **kwargs):
            calls.append(1)
            started.set()
            release.wait(5)
            return {"access_token": "shared", "expires_in": 3600}

        results = []
        lock = threading.Lock()

        def worker():
            cred = tm.get_token()
            with lock:
                results.append(cred)

        with patch("twitch_auth.request_json", side_effect=slow_fetch):
            threads = [threading.Thread(target=worker) for _ in range(8)]
            threads[0].start()
            assert started.wait(5)
            for t in threads[1:]:
                t.start()
            time.sleep(0.05)
            release.set()
            for t in threads:
                t.join(5)

        assert len(calls) == 1
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_concurrent_callers_share_failure(self):
        tm = _manager()
        started = threading.Event()
        release = threading.Event()

        def failing_fetch(*args, **kwargs):
            started.set()
            release.wait(5)
            raise _http_error(401)

        errors = []

        def worker():
            try:
                tm.get_token()
            except AuthError as e:
                errors.append(e)

        with patch("twitch_auth.request_json", side_effect=failing_fetch) as req:
            threads = [threading.Thread(target=worker) for _ in range(4)]
            threads[0].start()
            assert started.wait(5)
            for t in threads[1:]:
                t.start()
            time.sleep(0.05)
            release.set()
            for t in threads:
                t.join(5)

        assert req.call_count == 1
        assert len(errors) == 4


class TestForceRefresh:
    def test_force_refresh_replaces_stale(self):
        tm = _manager()
        stale = Credential("stale", expires_at=time.time() + 3600)
        tm._credential = stale
        with patch(
            "twitch_auth.request_json", return_value={"access_token": "fresh", "expires_in": 3600}
        ) as req:
            cred = tm.force_refresh(stale)
        assert cred.access_token == "fresh"
        assert req.call_count == 1

    def test_force_refresh_already_replaced(self):
        tm = _manager()
        stale = Credential("stale", expires_at=time.time() + 3600)
        current = Credential("current", expires_at=time.time() + 3600)
        tm._credential = current
        with patch("twitch_auth.request_json") as req:
            assert tm.force_refresh(stale) is current
        req.assert_not_called()

    def test_invalidate(self):
        tm = _manager()
        tm._credential = Credential("tok", expires_at=time.time() + 3600)
        tm.invalidate()
        with patch(
            "twitch_auth.request_json", return_value={"access_token": "new", "expires_in": 3600}
        ):
            assert tm.get_token().access_token == "new"


class TestRevoke:
    def test_revoke_posts_token(self):
        tm = _manager()
        tm._credential = Credential("tok", expires_at=time.time() + 3600)
        with patch("twitch_auth.request_json", return_value=None) as req:
            tm.revoke()
        _, kwargs = req.call_args
        assert kwargs["form"] == {"client_id": "client", "token": "tok"}
        assert tm._credential is None

    def test_revoke_without_token_is_noop(self):
        tm = _manager()
        with patch("twitch_auth.request_json") as req:
            tm.revoke()
        req.assert_not_called()

    def test_revoke_failure_is_logged_not_raised(self):
        tm = _manager()
        tm._credential = Credential("tok", expires_at=time.time() + 3600)
        with patch("twitch_auth.request_json", side_effect=urllib.error.URLError("down")):
            tm.revoke()


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
