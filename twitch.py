"""Twitch Helix client: channel live status and metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import logging
import re
import time
import urllib.error
import urllib.parse

from errors import AuthError, ChannelNotFoundError, TransientNetworkError
from twitch_auth import Credential, TokenManager
from util import request_json


log = logging.getLogger(__name__)

HELIX_URL = "https://api.twitch.tv/helix"
CHANNEL_URL = "https://www.twitch.tv"

_LOGIN_RE = re.compile(r"^[a-z0-9_]{1,25}$")
_BATCH_SIZE = 100  # Helix limit for repeated user_login params
_REQUEST_TIMEOUT_SEC = 5.0


def normalize_channel(channel: str) -> str:
    """Twitch logins are case-insensitive; compare and key on lowercase."""
    return channel.strip().lower()


def is_valid_login(channel: str) -> bool:
    return bool(_LOGIN_RE.match(channel))


def channel_url(channel: str) -> str:
    return f"{CHANNEL_URL}/{channel}"


@dataclass(slots=True)
class ChannelStatus:
    channel: str
    live: bool
    title: str | None = None
    fetched_at: float = field(default_factory=time.time)
    broadcaster_id: str = ""
    display_name: str = ""
    game_name: str = ""
    viewer_count: int = 0

    @property
    def stream_url(self) -> str:
        return channel_url(self.channel)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "live": self.live,
            "title": self.title,
            "fetched_at": self.fetched_at,
            "display_name": self.display_name,
            "game_name": self.game_name,
            "viewer_count": self.viewer_count,
            "stream_url": self.stream_url,
        }


class TwitchClient:
    """Minimal Helix client. Tokens come from a TokenManager."""

    def __init__(self, tokens: TokenManager, base_url: str = HELIX_URL):
        self.tokens = tokens
        self.base_url = base_url.rstrip("/")

    def get_status(self, channel: str) -> ChannelStatus:
        """Resolve `channel` and report whether it is live."""
        login = normalize_channel(channel)
        if not is_valid_login(login):
            raise ChannelNotFoundError(f"Invalid channel name: {channel!r}", channel=login)

        users = self._helix("users", [("login", login)])
        if not users:
            raise ChannelNotFoundError(f"Channel {login} does not exist", channel=login)
        user = users[0]

        streams = self._helix("streams", [("user_login", login)])
        live = next((s for s in streams if s.get("type") == "live"), None)
        status = ChannelStatus(
            channel=login,
            live=live is not None,
            title=live.get("title") if live else None,
            broadcaster_id=str(user.get("id", "")),
            display_name=user.get("display_name") or login,
            game_name=(live or {}).get("game_name", ""),
            viewer_count=int((live or {}).get("viewer_count", 0) or 0),
        )
        log.debug("Channel %s live=%s title=%r", login, status.live, status.title)
        return status

    def get_live_channels(self, channels: list[str]) -> list[ChannelStatus]:
        """Return statuses for the live subset of `channels`, batched per request."""
        logins = sorted({normalize_channel(c) for c in channels} - {""})
        logins = [c for c in logins if is_valid_login(c)]
        result: list[ChannelStatus] = []
        for i in range(0, len(logins), _BATCH_SIZE):
            chunk = logins[i : i + _BATCH_SIZE]
            params = [("first", str(_BATCH_SIZE))] + [("user_login", c) for c in chunk]
            for s in self._helix("streams", params):
                if s.get("type") != "live":
                    continue
                result.append(
                    ChannelStatus(
                        channel=normalize_channel(s.get("user_login", "")),
                        live=True,
                        title=s.get("title"),
                        broadcaster_id=str(s.get("user_id", "")),
                        display_name=s.get("user_name", ""),
                        game_name=s.get("game_name", ""),
                        viewer_count=int(s.get("viewer_count", 0) or 0),
                    )
                )
        log.info("Checked %d channels, %d live", len(logins), len(result))
        return result

    # -- transport ----------------------------------------------------------

    def _helix(self, endpoint: str, params: list[tuple[str, str]]) -> list[dict[str, Any]]:
        """GET a Helix endpoint and return its `data` list.

        A rejected token is force-refreshed and the request retried once.
        """
        url = f"{self.base_url}/{endpoint}?{urllib.parse.urlencode(params)}"
        cred = self.tokens.get_token()
        try:
            return self._get(url, cred)
        except _TokenRejected:
            log.info("Twitch rejected app token, forcing refresh")
            cred = self.tokens.force_refresh(cred)
        try:
            return self._get(url, cred)
        except _TokenRejected as e:
            raise AuthError("Twitch rejected a freshly refreshed token") from e

    def _get(self, url: str, cred: Credential) -> list[dict[str, Any]]:
        headers = {
            "Client-Id": self.tokens.client_id,
            "Authorization": f"Bearer {cred.access_token}",
        }
        try:
            payload = request_json(url, headers=headers, timeout=_REQUEST_TIMEOUT_SEC)
        except urllib.error.HTTPError as e:
            if e.code == 401:
                raise _TokenRejected() from e
            if e.code == 400:
                raise ChannelNotFoundError(f"Twitch rejected query ({e.code})") from e
            raise TransientNetworkError(f"Twitch API returned HTTP {e.code}") from e
        except ValueError as e:
            raise TransientNetworkError("Twitch API returned malformed JSON") from e
        except OSError as e:
            raise TransientNetworkError(f"Twitch API unreachable: {e}") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise TransientNetworkError("Twitch API response missing data")
        return payload["data"]


class _TokenRejected(Exception):
    pass
