"""Error taxonomy shared by the session orchestrator and the HTTP layer."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base error. status_code is the HTTP status main.py responds with."""

    status_code = 500

    def __init__(self, message: str = "", channel: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.channel = channel

    @property
    def name(self) -> str:
        return self.__class__.__name__.removesuffix("Error") or "Orchestrator"


# Twitch / credentials


class AuthError(OrchestratorError):
    """Credential acquisition or validation failed. Needs a config change."""

    status_code = 502


class TransientNetworkError(OrchestratorError):
    """Connectivity failure talking to Twitch."""

    status_code = 502


class ChannelNotFoundError(OrchestratorError):
    status_code = 404


class ChannelOfflineError(OrchestratorError):
    status_code = 404


# Capture process


class SpawnError(OrchestratorError):
    """Capture tool missing or the OS refused to launch it."""

    status_code = 500


# Caller misuse


class AlreadyActiveError(OrchestratorError):
    status_code = 409


class NotActiveError(OrchestratorError):
    status_code = 404


class NotFoundError(OrchestratorError):
    status_code = 404
