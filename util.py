"""Shared utilities."""

from __future__ import annotations

from typing import Any

import json
import random
import socket
import urllib.error
import urllib.parse
import urllib.request


class _SafeRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that only allows http/https schemes."""

    def redirect_request(
        self,
        req: urllib.request.Request,
        fp: Any,
        code: int,
        msg: str,
        headers: Any,
        newurl: str,
    ) -> urllib.request.Request | None:
        parsed = urllib.parse.urlparse(newurl)
        if parsed.scheme not in ("http", "https"):
            raise urllib.error.URLError(f"Unsafe redirect scheme: {parsed.scheme}")
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def safe_urlopen(url: str | urllib.request.Request, timeout: float = 30) -> Any:
    """Open URL (or prepared Request) with safe redirect handling."""
    full_url = url.full_url if isinstance(url, urllib.request.Request) else url
    parsed = urllib.parse.urlparse(full_url)
    if parsed.scheme not in ("http", "https"):
        raise urllib.error.URLError(f"Unsafe URL scheme: {parsed.scheme}")
    opener = urllib.request.build_opener(_SafeRedirectHandler())
    return opener.open(url, timeout=timeout)


def request_json(
    url: str,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    form: dict[str, str] | None = None,
    timeout: float = 10,
) -> Any:
    """Issue a request and decode the JSON body.

    Raises urllib.error.HTTPError for non-2xx, urllib.error.URLError or
    OSError for connectivity problems and ValueError for a non-JSON body.
    """
    data = urllib.parse.urlencode(form).encode() if form is not None else None
    req = urllib.request.Request(url, data=data, headers=headers or {}, method=method)
    with safe_urlopen(req, timeout=timeout) as resp:
        body = resp.read()
    if not body:
        return None
    return json.loads(body.decode("utf-8"))


def is_transient(exc: BaseException) -> bool:
    """True for connectivity failures worth retrying (not HTTP status errors)."""
    if isinstance(exc, urllib.error.HTTPError):
        return False
    return isinstance(exc, (urllib.error.URLError, TimeoutError, socket.timeout, ConnectionError))


def backoff_delay(attempt: int, base: float = 0.5, cap: float = 8.0) -> float:
    """Full-jitter exponential backoff for the given 1-based attempt."""
    return random.uniform(0, min(cap, base * 2 ** (attempt - 1)))
