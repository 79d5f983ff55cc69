"""Stream session lifecycle: one capture session per Twitch channel."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import logging
import threading
import time

from capture_process import ExitOutcome, ProcessHandle, ProcessSupervisor
from errors import (
    AlreadyActiveError,
    ChannelOfflineError,
    NotActiveError,
    NotFoundError,
    OrchestratorError,
)
from twitch import TwitchClient, normalize_channel


log = logging.getLogger(__name__)

_TERMINAL_RETENTION_SEC = 300.0

# Reasons recorded in Session.last_error
CHANNEL_OFFLINE = "ChannelOffline"
PROCESS_CRASHED = "ProcessCrashed"


class SessionState(str, Enum):
    RESOLVING = "resolving"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)


class _Session:
    """Mutable session record. Only touched under SessionController._lock."""

    __slots__ = (
        "channel",
        "state",
        "started",
        "ended",
        "handle",
        "last_error",
        "exit_outcome",
        "title",
        "pending_exit",
    )

    def __init__(self, channel: str):
        self.channel = channel
        self.state = SessionState.RESOLVING
        self.started = time.time()
        self.ended: float | None = None
        self.handle: ProcessHandle | None = None
        self.last_error: str | None = None
        self.exit_outcome: ExitOutcome | None = None
        self.title: str | None = None
        # Exit that arrived before the session reached RUNNING
        self.pending_exit: ExitOutcome | None = None


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Immutable copy of a session, safe to hand out."""

    channel: str
    state: SessionState
    start_time: float
    end_time: float | None
    last_error: str | None
    exit_outcome: ExitOutcome | None
    pid: int | None
    output_path: str | None
    title: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "state": self.state.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "last_error": self.last_error,
            "exit": self.exit_outcome.to_dict() if self.exit_outcome else None,
            "pid": self.pid,
            "output_path": self.output_path,
            "title": self.title,
        }


def _error_reason(e: Exception) -> str:
    name = e.name if isinstance(e, OrchestratorError) else type(e).__name__
    return f"{name}: {e}"


def _snapshot(session: _Session) -> SessionSnapshot:
    handle = session.handle
    return SessionSnapshot(
        channel=session.channel,
        state=session.state,
        start_time=session.started,
        end_time=session.ended,
        last_error=session.last_error,
        exit_outcome=session.exit_outcome,
        pid=handle.pid if handle else None,
        output_path=str(handle.output_path) if handle and handle.output_path else None,
        title=session.title,
    )


class SessionController:
    """State machine over the session table.

    The table lock is held only for short synchronous transitions. Twitch
    lookups, spawning and termination happen outside it; their results are
    applied by re-taking the lock and checking the session is still the one
    the operation started with.
    """

    def __init__(
        self,
        twitch: TwitchClient,
        supervisor: ProcessSupervisor,
        terminal_retention: float = _TERMINAL_RETENTION_SEC,
    ):
        self.twitch = twitch
        self.supervisor = supervisor
        self.terminal_retention = terminal_retention
        self._lock = threading.Lock()
        self._sessions: dict[str, _Session] = {}

    # ===========================================================================
    # Start
    # ===========================================================================

    def start(self, channel: str) -> SessionSnapshot:
        """Resolve the channel, spawn a capture process and track it.

        Raises AlreadyActiveError, ChannelOfflineError, SpawnError or the
        Twitch lookup error. Every failure after the session was created
        leaves it FAILED in the table until observed.
        """
        key = normalize_channel(channel)
        with self._lock:
            existing = self._sessions.get(key)
            if existing is not None and not existing.state.is_terminal:
                raise AlreadyActiveError(
                    f"Session for {key} is already {existing.state.value}", channel=key
                )
            session = _Session(key)
            self._sessions[key] = session
        log.info("Session %s: resolving", key)

        try:
            status = self.twitch.get_status(key)
        except Exception as e:
            self._fail(session, _error_reason(e))
            raise

        if not status.live:
            self._fail(session, CHANNEL_OFFLINE)
            raise ChannelOfflineError(f"Channel {key} is offline", channel=key)

        with self._lock:
            session.state = SessionState.STARTING
            session.title = status.title
        log.info("Session %s: starting capture (%r)", key, status.title)

        try:
            handle = self.supervisor.spawn(key, status.stream_url)
        except Exception as e:
            self._fail(session, _error_reason(e))
            raise

        with self._lock:
            session.handle = handle
        self.supervisor.wait_exit(handle, lambda outcome: self._on_exit(session, handle, outcome))

        with self._lock:
            if session.state is SessionState.STARTING:
                if session.pending_exit is not None:
                    self._crash(session, session.pending_exit)
                else:
                    session.state = SessionState.RUNNING
                    log.info("Session %s: running (pid=%s)", key, handle.pid)
            return _snapshot(session)

    def _fail(self, session: _Session, reason: str) -> None:
        with self._lock:
            session.state = SessionState.FAILED
            session.last_error = reason
            session.ended = time.time()
        log.info("Session %s: failed (%s)", session.channel, reason)

    def _crash(self, session: _Session, outcome: ExitOutcome) -> None:
        """Must hold _lock."""
        session.state = SessionState.FAILED
        session.exit_outcome = outcome
        session.ended = time.time()
        detail = session.handle.last_stderr() if session.handle else ""
        session.last_error = f"{PROCESS_CRASHED}: {outcome.describe()}"
        if detail:
            session.last_error += f" ({detail})"
        log.warning("Session %s: capture process crashed, %s", session.channel, outcome.describe())

    # ===========================================================================
    # Exit Notification
    # ===========================================================================

    def _on_exit(self, session: _Session, handle: ProcessHandle, outcome: ExitOutcome) -> None:
        with self._lock:
            if session.handle is not handle:
                log.debug("Ignoring stale exit for %s", handle)
                return
            if session.state is SessionState.STOPPING:
                session.state = SessionState.STOPPED
                session.exit_outcome = outcome
                session.ended = time.time()
                log.info("Session %s: stopped (%s)", session.channel, outcome.describe())
            elif session.state is SessionState.RUNNING:
                self._crash(session, outcome)
            elif session.state is SessionState.STARTING:
                session.pending_exit = outcome

    # ===========================================================================
    # Stop
    # ===========================================================================

    def stop(self, channel: str) -> SessionSnapshot:
        """Stop a RUNNING session. Idempotent while STOPPING."""
        key = normalize_channel(channel)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                raise NotActiveError(f"No session for {key}", channel=key)
            if session.state is SessionState.STOPPING:
                return _snapshot(session)
            if session.state is not SessionState.RUNNING:
                raise NotActiveError(
                    f"Session for {key} is {session.state.value}, not running", channel=key
                )
            session.state = SessionState.STOPPING
            handle = session.handle
        log.info("Session %s: stopping", key)

        assert handle is not None
        self.supervisor.terminate(handle)

        with self._lock:
            return _snapshot(session)

    # ===========================================================================
    # Query
    # ===========================================================================

    def status(self, channel: str) -> SessionSnapshot:
        """Snapshot of the channel's session.

        A terminal session is evicted once its snapshot has been returned.
        """
        key = normalize_channel(channel)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                raise NotFoundError(f"No session for {key}", channel=key)
            snap = _snapshot(session)
            self._evict_if_terminal(session)
            return snap

    def list(self) -> list[SessionSnapshot]:
        """Snapshots of all sessions, oldest first."""
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: (s.started, s.channel))
            snaps = [_snapshot(s) for s in sessions]
            for s in sessions:
                self._evict_if_terminal(s)
            return snaps

    def active_channels(self) -> list[str]:
        """Channels with a non-terminal session. Does not evict anything."""
        with self._lock:
            return sorted(k for k, s in self._sessions.items() if not s.state.is_terminal)

    def _evict_if_terminal(self, session: _Session) -> None:
        """Must hold _lock."""
        if not session.state.is_terminal:
            return
        if self._sessions.get(session.channel) is session:
            del self._sessions[session.channel]
            log.debug("Evicted %s session for %s", session.state.value, session.channel)

    # ===========================================================================
    # Housekeeping
    # ===========================================================================

    def cleanup_expired_sessions(self) -> int:
        """Evict terminal sessions nobody observed within the retention period."""
        now = time.time()
        with self._lock:
            expired = [
                key
                for key, s in self._sessions.items()
                if s.state.is_terminal and now - (s.ended or s.started) > self.terminal_retention
            ]
            for key in expired:
                del self._sessions[key]
        if expired:
            log.info("Evicted %d unobserved terminal sessions", len(expired))
        return len(expired)

    def shutdown(self) -> None:
        """Stop every running session and terminate leftover processes.

        All captures are interrupted in parallel by the supervisor; their
        exits move the sessions to STOPPED.
        """
        with self._lock:
            stopping = [s for s in self._sessions.values() if s.state is SessionState.RUNNING]
            for session in stopping:
                session.state = SessionState.STOPPING
        if stopping:
            log.info("Shutdown: stopping %d sessions", len(stopping))
        self.supervisor.shutdown()
