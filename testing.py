"""Test utilities: fakes for Twitch and the capture supervisor."""

from __future__ import annotations

from collections.abc import Callable

import itertools
import sys
import threading

from capture_process import ExitOutcome
from errors import SpawnError
from twitch import ChannelStatus, normalize_channel


class FakeTokens:
    client_id = "test-client"

    def __init__(self) -> None:
        self.revoked = False

    def revoke(self) -> None:
        self.revoked = True


class FakeTwitch:
    """TwitchClient stand-in. Channels in `live` are live, `errors` raise."""

    def __init__(self, live: dict[str, str | None] | None = None):
        self.live = dict(live or {})
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.gate: threading.Event | None = None  # blocks get_status until set
        self.tokens = FakeTokens()

    def get_status(self, channel: str) -> ChannelStatus:
        self.calls.append(channel)
        if self.gate is not None:
            self.gate.wait(5)
        if channel in self.errors:
            raise self.errors[channel]
        if channel in self.live:
            return ChannelStatus(channel=channel, live=True, title=self.live[channel])
        return ChannelStatus(channel=channel, live=False)

    def get_live_channels(self, channels: list[str]) -> list[ChannelStatus]:
        return [
            ChannelStatus(channel=c, live=True, title=self.live[c])
            for c in sorted({normalize_channel(c) for c in channels})
            if c in self.live
        ]


class FakeHandle:
    _pids = itertools.count(1000)

    def __init__(self, channel: str, stream_url: str):
        self.channel = channel
        self.stream_url = stream_url
        self.pid = next(self._pids)
        self.output_path = None
        self.callbacks: list[Callable[[ExitOutcome], None]] = []
        self.outcome: ExitOutcome | None = None
        self.terminated = 0

    def last_stderr(self) -> str:
        return ""


class FakeSupervisor:
    """ProcessSupervisor stand-in with manual exit control.

    With `exit_on_terminate` set, terminate() delivers that outcome
    synchronously, like a capture tool that honours the interrupt.
    """

    def __init__(self, exit_on_terminate: ExitOutcome | None = ExitOutcome("normal_exit")):
        self.exit_on_terminate = exit_on_terminate
        self.spawn_error: SpawnError | None = None
        self.exit_on_spawn: ExitOutcome | None = None
        self.handles: list[FakeHandle] = []
        self.shut_down = False

    def spawn(self, channel: str, stream_url: str) -> FakeHandle:
        if self.spawn_error is not None:
            raise self.spawn_error
        handle = FakeHandle(channel, stream_url)
        self.handles.append(handle)
        if self.exit_on_spawn is not None:
            handle.outcome = self.exit_on_spawn
        return handle

    def wait_exit(self, handle: FakeHandle, callback: Callable[[ExitOutcome], None]) -> None:
        if handle.outcome is not None:
            callback(handle.outcome)
        else:
            handle.callbacks.append(callback)

    def exit(self, handle: FakeHandle, outcome: ExitOutcome) -> None:
        if handle.outcome is not None:
            return
        handle.outcome = outcome
        callbacks, handle.callbacks = handle.callbacks, []
        for cb in callbacks:
            cb(outcome)

    def terminate(self, handle: FakeHandle, grace_period: float | None = None) -> None:
        handle.terminated += 1
        if self.exit_on_terminate is not None:
            self.exit(handle, self.exit_on_terminate)

    def shutdown(self) -> None:
        self.shut_down = True
        for handle in self.handles:
            if handle.outcome is None:
                self.terminate(handle)


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )
