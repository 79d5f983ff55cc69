"""Server settings: JSON settings file overlaid by environment variables."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SERVER_SETTINGS_FILE = CACHE_DIR / "server_settings.json"

DEFAULT_ADDR = "127.0.0.1:23559"

# env var -> Settings field
_ENV_VARS = {
    "TWITCH_CLIENT_ID": "client_id",
    "TWITCH_CLIENT_SECRET": "client_secret",
    "ADDR": "addr",
    "CAPTURE_TOOL": "capture_tool",
    "CAPTURE_MODE": "capture_mode",
    "CAPTURE_DIR": "capture_dir",
    "CAPTURE_QUALITY": "capture_quality",
    "CAPTURE_GRACE_SECS": "grace_period",
    "TERMINAL_RETENTION_SECS": "terminal_retention",
    "LOG_LEVEL": "log_level",
}


@dataclass(slots=True)
class Settings:
    client_id: str = ""
    client_secret: str = ""
    addr: str = DEFAULT_ADDR
    capture_tool: str = "streamlink"
    capture_mode: str = "record"  # "record" to file, "play" through streamlink's player
    capture_dir: str = str(APP_DIR / "recordings")
    capture_quality: str = "best"
    grace_period: float = 5.0
    terminal_retention: float = 300.0
    log_level: str = "INFO"

    @property
    def host(self) -> str:
        return self.addr.rsplit(":", 1)[0] or "127.0.0.1"

    @property
    def port(self) -> int:
        _, _, port = self.addr.rpartition(":")
        return int(port) if port.isdigit() else 23559


def _coerce(name: str, value: Any) -> Any:
    if name in ("grace_period", "terminal_retention"):
        return float(value)
    return str(value)


def _read_settings_file(path: pathlib.Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(
    path: pathlib.Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """Load settings. Environment wins over the settings file."""
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    values: dict[str, Any] = {}
    for key, value in _read_settings_file(path or SERVER_SETTINGS_FILE).items():
        if key in known:
            values[key] = value
    for env_name, field_name in _ENV_VARS.items():
        if environ.get(env_name):
            values[field_name] = environ[env_name]

    settings = Settings(**{k: _coerce(k, v) for k, v in values.items()})
    if settings.capture_mode not in ("record", "play"):
        log.warning("Unknown capture_mode %r, using 'record'", settings.capture_mode)
        settings.capture_mode = "record"
    if not settings.client_id or not settings.client_secret:
        log.warning("TWITCH_CLIENT_ID/TWITCH_CLIENT_SECRET not set, Twitch lookups will fail")
    return settings
