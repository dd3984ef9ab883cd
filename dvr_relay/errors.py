"""Exceptions raised by the relay's managers and external clients."""

from __future__ import annotations

from .models import ErrorKind


class RelayError(Exception):
    """Base class for errors surfaced to API callers."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(RelayError):
    kind = ErrorKind.INVALID_INPUT


class ProcessSpawnFailed(RelayError):
    kind = ErrorKind.PROCESS_SPAWN_FAILED


class DvrRequestError(RelayError):
    """The DVR's CGI interface could not be queried."""

    kind = ErrorKind.DVR_UNAVAILABLE


class PlaybackRelayError(RelayError):
    """The playback relay rejected or failed a session request."""

    kind = ErrorKind.RELAY_UNAVAILABLE
