"""Error taxonomy for Flick."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import asyncssh

if TYPE_CHECKING:
    from flick.models import AuthMethod, TransportMode


class FlickError(Exception):
    """Base class for engine errors."""

    pass


class ConnectErrorKind(Enum):
    """Why a connect() call failed as a whole."""

    ALL_AUTH_METHODS_EXHAUSTED = "all_auth_methods_exhausted"
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"


class AttemptFailure(Enum):
    """Classification of a single failed authentication attempt."""

    AUTH_REJECTED = "auth_rejected"
    TRANSPORT = "transport"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ConnectAttempt:
    """One step of the authentication chain and how it ended."""

    mode: TransportMode
    method: AuthMethod | None
    failure: AttemptFailure | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.failure is None

    def __str__(self) -> str:
        method = self.method.describe() if self.method else "-"
        if self.succeeded:
            return f"[{self.mode.value}] {method}: ok"
        return f"[{self.mode.value}] {method}: {self.failure.value}: {self.message}"


class AuthAttemptError(FlickError):
    """A single authentication attempt failed; the chain moves on."""

    def __init__(self, failure: AttemptFailure, message: str):
        self.failure = failure
        super().__init__(message)


class ConnectError(FlickError):
    """Aggregate failure of every authentication method in every mode."""

    def __init__(self, kind: ConnectErrorKind, attempts: list[ConnectAttempt] | None = None):
        self.kind = kind
        self.attempts = list(attempts or [])
        super().__init__(self.summary())

    def _last_message(self, mode_value: str) -> str | None:
        for attempt in reversed(self.attempts):
            if attempt.mode.value == mode_value and not attempt.succeeded:
                return attempt.message
        return None

    @property
    def library_error(self) -> str | None:
        """Last error reported by Library Mode."""
        return self._last_message("library")

    @property
    def native_error(self) -> str | None:
        """Last error reported by Native-Tool Mode."""
        return self._last_message("native_tool")

    def summary(self) -> str:
        """Human-readable aggregate reason."""
        headline = {
            ConnectErrorKind.ALL_AUTH_METHODS_EXHAUSTED: "all authentication methods failed",
            ConnectErrorKind.TRANSPORT_UNAVAILABLE: "no usable SSH transport",
            ConnectErrorKind.NETWORK_UNREACHABLE: "host unreachable",
            ConnectErrorKind.TIMEOUT: "connection timed out",
        }[self.kind]
        parts = [headline]
        if self.library_error:
            parts.append(f"library: {self.library_error}")
        if self.native_error:
            parts.append(f"native fallback also failed: {self.native_error}")
        return "; ".join(parts)


class ListErrorKind(Enum):
    """Fatal listing failures."""

    PERMISSION_DENIED = "permission_denied"
    PATH_NOT_FOUND = "path_not_found"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    REMOTE_ERROR = "remote_error"


@dataclass(frozen=True)
class ListWarning:
    """Non-fatal listing problem: some output lines could not be parsed."""

    good_entries: int
    bad_line_count: int
    samples: tuple[str, ...] = ()

    def __str__(self) -> str:
        return (
            f"skipped {self.bad_line_count} unparsable line(s), "
            f"{self.good_entries} entries listed"
        )


class ListError(FlickError):
    """Directory listing failed."""

    def __init__(self, kind: ListErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class TransferErrorKind(Enum):
    """Reasons a transfer fails."""

    SOURCE_NOT_FOUND = "source_not_found"
    DESTINATION_CONFLICT = "destination_conflict"
    DISK_FULL = "disk_full"
    CONNECTION_LOST = "connection_lost"
    CANCELLED = "cancelled"
    REMOTE_QUOTA_EXCEEDED = "remote_quota_exceeded"
    IO_ERROR = "io_error"


class TransferError(FlickError):
    """A file transfer or remote file operation failed."""

    def __init__(self, kind: TransferErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class TransferCancelled(TransferError):
    """Raised at a progress point once cancellation has been requested."""

    def __init__(self, message: str = "Transfer cancelled"):
        super().__init__(TransferErrorKind.CANCELLED, message)


def is_connection_error(error: BaseException) -> bool:
    """Check if an exception indicates a dropped connection."""
    if isinstance(error, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
        return True
    if isinstance(error, OSError) and error.errno in (54, 32, 104):  # Connection reset codes
        return True
    if isinstance(error, (asyncssh.ConnectionLost, asyncssh.DisconnectError)):
        return True
    if isinstance(error, asyncssh.Error):
        error_str = str(error).lower()
        if any(x in error_str for x in ("connection", "disconnect", "closed")):
            return True
    return False


def is_timeout(error: BaseException) -> bool:
    return isinstance(error, (asyncio.TimeoutError, TimeoutError))
