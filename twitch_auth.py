"""Twitch app access token: acquisition, refresh, coalescing."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

import logging
import threading
import time
import urllib.error

from errors import AuthError, TransientNetworkError
from util import backoff_delay, is_transient, request_json


log = logging.getLogger(__name__)

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
REVOKE_URL = "https://id.twitch.tv/oauth2/revoke"

_EXPIRY_MARGIN_SEC = 60.0
_MAX_ATTEMPTS = 3
_REQUEST_TIMEOUT_SEC = 10.0


@dataclass(frozen=True, slots=True)
class Credential:
    access_token: str
    expires_at: float
    scope: str = "app access"

    def is_usable(self, margin: float = _EXPIRY_MARGIN_SEC, now: float | None = None) -> bool:
        """True if the token stays valid for at least `margin` more seconds."""
        now = time.time() if now is None else now
        return self.expires_at - now > margin


class TokenManager:
    """Holds at most one app access token and refreshes it on demand.

    Callers that arrive while a refresh is running wait on the same Future,
    so a burst of requests results in one call to the token endpoint.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        margin: float = _EXPIRY_MARGIN_SEC,
        max_attempts: int = _MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.margin = margin
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._lock = threading.Lock()
        self._credential: Credential | None = None
        self._inflight: Future[Credential] | None = None

    def get_token(self) -> Credential:
        """Return a Credential that is valid for at least `margin` seconds."""
        with self._lock:
            cred = self._credential
            if cred is not None and cred.is_usable(self.margin):
                return cred
            future, leader = self._join_refresh()
        if leader:
            self._run_refresh(future)
        return future.result()

    def force_refresh(self, stale: Credential | None = None) -> Credential:
        """Discard `stale` (rejected by the API) and return a fresh Credential.

        If `stale` has already been replaced, the replacement is returned
        without another request.
        """
        with self._lock:
            cred = self._credential
            if cred is not None and stale is not None and cred != stale:
                if cred.is_usable(self.margin):
                    return cred
            if cred is not None and (stale is None or cred == stale):
                self._credential = None
            future, leader = self._join_refresh()
        if leader:
            self._run_refresh(future)
        return future.result()

    def invalidate(self) -> None:
        with self._lock:
            self._credential = None

    def revoke(self) -> None:
        """Revoke the held token at Twitch. Best effort, used on shutdown."""
        with self._lock:
            cred, self._credential = self._credential, None
        if cred is None:
            return
        try:
            request_json(
                REVOKE_URL,
                method="POST",
                form={"client_id": self.client_id, "token": cred.access_token},
                timeout=_REQUEST_TIMEOUT_SEC,
            )
            log.info("Revoked Twitch app token")
        except (OSError, ValueError) as e:
            log.warning("Token revoke failed: %s", e)

    # -- refresh ------------------------------------------------------------

    def _join_refresh(self) -> tuple[Future[Credential], bool]:
        """Must hold _lock. Returns (future, True if caller must run the refresh)."""
        if self._inflight is not None:
            return self._inflight, False
        self._inflight = Future()
        return self._inflight, True

    def _run_refresh(self, future: Future[Credential]) -> None:
        try:
            cred = self._fetch_with_retry()
        except BaseException as e:
            with self._lock:
                self._inflight = None
            future.set_exception(e)
            return
        with self._lock:
            self._credential = cred
            self._inflight = None
        future.set_result(cred)

    def _fetch_with_retry(self) -> Credential:
        if not self.client_id or not self._client_secret:
            raise AuthError("Twitch client id/secret not configured")
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._fetch()
            except AuthError:
                raise
            except Exception as e:
                if not is_transient(e):
                    raise
                last_error = e
                if attempt < self.max_attempts:
                    delay = backoff_delay(attempt)
                    log.warning(
                        "Token refresh attempt %d/%d failed (%s), retrying in %.1fs",
                        attempt,
                        self.max_attempts,
                        e,
                        delay,
                    )
                    self._sleep(delay)
        raise TransientNetworkError(f"Token endpoint unreachable: {last_error}")

    def _fetch(self) -> Credential:
        requested_at = time.time()
        try:
            payload = request_json(
                TOKEN_URL,
                method="POST",
                form={
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=_REQUEST_TIMEOUT_SEC,
            )
        except urllib.error.HTTPError as e:
            raise AuthError(f"Token endpoint returned HTTP {e.code}") from e
        except ValueError as e:
            raise AuthError("Token endpoint returned malformed JSON") from e
        cred = _parse_token_payload(payload, requested_at)
        if not cred.is_usable(self.margin, now=requested_at):
            raise AuthError(f"Token endpoint issued a token expiring within {self.margin:.0f}s")
        log.info(
            "Acquired Twitch app token (expires in %ds)", int(cred.expires_at - requested_at)
        )
        return cred


def _parse_token_payload(payload: Any, requested_at: float) -> Credential:
    if not isinstance(payload, dict):
        raise AuthError("Token endpoint returned malformed payload")
    token = payload.get("access_token")
    expires_in = payload.get("expires_in")
    if not isinstance(token, str) or not token:
        raise AuthError("Token payload missing access_token")
    if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool) or expires_in <= 0:
        raise AuthError("Token payload missing expires_in")
    return Credential(access_token=token, expires_at=requested_at + float(expires_in))
