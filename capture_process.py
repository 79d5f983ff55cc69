"""Capture process supervision: spawn, terminate and reap streamlink."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

import logging
import os
import pathlib
import shutil
import signal
import subprocess
import threading
import time

from errors import SpawnError


log = logging.getLogger(__name__)

# Timing constants
_DEFAULT_GRACE_SEC = 5.0
_KILL_WAIT_SEC = 5.0

_STDERR_TAIL_LINES = 20

ExitKind = Literal["normal_exit", "non_zero_exit", "killed_by_signal", "supervisor_terminated"]
CaptureMode = Literal["record", "play"]
CmdBuilder = Callable[[str, str, pathlib.Path | None], list[str]]


@dataclass(frozen=True, slots=True)
class ExitOutcome:
    kind: ExitKind
    code: int | None = None  # exit status for non_zero_exit, signal number otherwise

    def describe(self) -> str:
        if self.kind == "non_zero_exit":
            return f"exited with code {self.code}"
        if self.kind == "killed_by_signal":
            return f"killed by signal {self.code}"
        if self.kind == "supervisor_terminated":
            return "terminated by supervisor"
        return "exited normally"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "code": self.code}


def classify_exit(returncode: int, terminate_requested: bool) -> ExitOutcome:
    """Map a Popen returncode to an ExitOutcome."""
    if returncode == 0:
        return ExitOutcome("normal_exit")
    if returncode < 0:
        if terminate_requested:
            return ExitOutcome("supervisor_terminated", -returncode)
        return ExitOutcome("killed_by_signal", -returncode)
    return ExitOutcome("non_zero_exit", returncode)


# ===========================================================================
# Command Building
# ===========================================================================


def build_output_path(capture_dir: str | pathlib.Path, channel: str) -> pathlib.Path:
    """<capture_dir>/<channel>/<channel>_<UTC timestamp>.ts"""
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return pathlib.Path(capture_dir) / channel / f"{channel}_{stamp}.ts"


def build_capture_cmd(
    tool: str,
    stream_url: str,
    output_path: pathlib.Path | None,
    quality: str = "best",
) -> list[str]:
    """Build the streamlink command line.

    With an output path the stream is recorded; without one it is handed to
    streamlink's configured player.
    """
    cmd = [tool, "--twitch-disable-ads", "--loglevel", "info"]
    if output_path is not None:
        cmd += ["--output", str(output_path)]
    cmd += [stream_url, quality]
    return cmd


# ===========================================================================
# Handle
# ===========================================================================


class ProcessHandle:
    """One spawned capture process. Owned by the ProcessSupervisor."""

    def __init__(
        self,
        channel: str,
        proc: subprocess.Popen[bytes],
        cmd: list[str],
        output_path: pathlib.Path | None,
    ):
        self.channel = channel
        self.cmd = cmd
        self.output_path = output_path
        self.started = time.time()
        self._proc = proc
        self._lock = threading.Lock()
        self._exited = threading.Event()
        self._outcome: ExitOutcome | None = None
        self._callbacks: list[Callable[[ExitOutcome], None]] = []
        self._terminate_requested = False
        self.stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def outcome(self) -> ExitOutcome | None:
        with self._lock:
            return self._outcome

    def is_alive(self) -> bool:
        return not self._exited.is_set()

    def last_stderr(self) -> str:
        return self.stderr_tail[-1] if self.stderr_tail else ""

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.channel} pid={self.pid}>"


# ===========================================================================
# Supervisor
# ===========================================================================


class ProcessSupervisor:
    """Spawns one capture process per session and reports its exit exactly once."""

    def __init__(
        self,
        tool: str = "streamlink",
        mode: CaptureMode = "record",
        capture_dir: str | pathlib.Path = "recordings",
        quality: str = "best",
        grace_period: float = _DEFAULT_GRACE_SEC,
        build_cmd: CmdBuilder | None = None,
    ):
        self.tool = tool
        self.mode = mode
        self.capture_dir = pathlib.Path(capture_dir)
        self.quality = quality
        self.grace_period = grace_period
        self._build_cmd = build_cmd or self._default_cmd
        self._lock = threading.Lock()
        self._handles: set[ProcessHandle] = set()

    def _default_cmd(
        self, channel: str, stream_url: str, output_path: pathlib.Path | None
    ) -> list[str]:
        return build_capture_cmd(self.tool, stream_url, output_path, self.quality)

    def spawn(self, channel: str, stream_url: str) -> ProcessHandle:
        """Launch the capture tool for `stream_url`. Raises SpawnError."""
        output_path = None
        if self.mode == "record":
            output_path = build_output_path(self.capture_dir, channel)
        cmd = self._build_cmd(channel, stream_url, output_path)
        if not cmd:
            raise SpawnError("Empty capture command", channel=channel)
        executable = shutil.which(cmd[0])
        if executable is None:
            raise SpawnError(f"Capture tool not found: {cmd[0]}", channel=channel)
        cmd = [executable, *cmd[1:]]

        try:
            if output_path is not None:
                output_path.parent.mkdir(parents=True, exist_ok=True)
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,  # own process group, signalled as a unit
            )
        except (OSError, ValueError) as e:
            raise SpawnError(f"Failed to launch {cmd[0]}: {e}", channel=channel) from e

        handle = ProcessHandle(channel, proc, cmd, output_path)
        with self._lock:
            self._handles.add(handle)
        try:
            threading.Thread(
                target=self._monitor,
                args=(handle,),
                name=f"capture-{channel}",
                daemon=True,
            ).start()
        except RuntimeError as e:
            # No monitor means nobody reaps it
            with self._lock:
                self._handles.discard(handle)
            _signal_group(handle, signal.SIGKILL)
            proc.wait()
            if proc.stderr is not None:
                proc.stderr.close()
            raise SpawnError(f"Failed to monitor {cmd[0]}: {e}", channel=channel) from e
        log.info("Started capture pid=%s for %s: %s", handle.pid, channel, " ".join(cmd))
        return handle

    def wait_exit(self, handle: ProcessHandle, callback: Callable[[ExitOutcome], None]) -> None:
        """Call `callback(outcome)` once when the process exits.

        Runs immediately in the calling thread if it has already exited.
        """
        with handle._lock:
            outcome = handle._outcome
            if outcome is None:
                handle._callbacks.append(callback)
                return
        _invoke(handle, callback, outcome)

    def terminate(self, handle: ProcessHandle, grace_period: float | None = None) -> None:
        """Interrupt the process, then kill it if it outlives the grace period.

        No-op for a process that has already exited. Returns once the exit has
        been dispatched (or the kill wait ran out).
        """
        grace = self.grace_period if grace_period is None else grace_period
        with handle._lock:
            if handle._outcome is not None:
                return
            handle._terminate_requested = True

        log.info("Interrupting capture pid=%s for %s", handle.pid, handle.channel)
        _signal_group(handle, signal.SIGINT)
        if handle._exited.wait(grace):
            return

        log.warning(
            "Capture pid=%s for %s ignored interrupt for %.1fs, killing",
            handle.pid,
            handle.channel,
            grace,
        )
        _signal_group(handle, signal.SIGKILL)
        if not handle._exited.wait(_KILL_WAIT_SEC):
            log.error(
                "Capture pid=%s for %s did not exit after SIGKILL", handle.pid, handle.channel
            )

    def active_handles(self) -> list[ProcessHandle]:
        with self._lock:
            return [h for h in self._handles if h.is_alive()]

    def shutdown(self) -> None:
        """Terminate every live capture process."""
        handles = self.active_handles()
        threads = [
            threading.Thread(target=self.terminate, args=(h,), daemon=True) for h in handles
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        if handles:
            log.info("Shutdown: terminated %d capture processes", len(handles))

    # -- monitor ------------------------------------------------------------

    def _monitor(self, handle: ProcessHandle) -> None:
        """Drain stderr, reap the process, dispatch the exit outcome."""
        proc = handle._proc
        try:
            if proc.stderr is not None:
                for raw in proc.stderr:
                    text = raw.decode(errors="replace").rstrip()
                    if not text:
                        continue
                    handle.stderr_tail.append(text)
                    is_error = "error" in text.lower()
                    level = logging.WARNING if is_error else logging.DEBUG
                    log.log(level, "capture:%s %s", handle.channel, text)
        except (OSError, ValueError) as e:
            log.debug("capture:%s stderr closed: %s", handle.channel, e)
        finally:
            returncode = proc.wait()
            if proc.stderr is not None:
                proc.stderr.close()

        with handle._lock:
            outcome = classify_exit(returncode, handle._terminate_requested)
            handle._outcome = outcome
            callbacks, handle._callbacks = handle._callbacks, []
        with self._lock:
            self._handles.discard(handle)

        log.info("Capture pid=%s for %s %s", handle.pid, handle.channel, outcome.describe())
        for cb in callbacks:
            _invoke(handle, cb, outcome)
        handle._exited.set()


def _invoke(
    handle: ProcessHandle, callback: Callable[[ExitOutcome], None], outcome: ExitOutcome
) -> None:
    try:
        callback(outcome)
    except Exception:
        log.exception("Exit callback failed for %s", handle)


def _signal_group(handle: ProcessHandle, sig: signal.Signals) -> None:
    try:
        os.killpg(handle.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        # Group already gone and pid reused; fall back to the direct child
        try:
            handle._proc.send_signal(sig)
        except (ProcessLookupError, OSError):
            pass
