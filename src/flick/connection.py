"""Connection establishment with Library Mode first and Native-Tool Mode as fallback."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from flick import auth
from flick.backend import FileTransfer
from flick.errors import (
    AttemptFailure,
    AuthAttemptError,
    ConnectAttempt,
    ConnectError,
    ConnectErrorKind,
)
from flick.models import AuthMethod, EngineSettings, ServerProfile, TransportMode
from flick.native import NativeToolBackend
from flick.sftp import LibraryBackend

logger = logging.getLogger(__name__)

BackendOpener = Callable[[ServerProfile, AuthMethod, EngineSettings], Awaitable[FileTransfer]]

# Failures after which trying more methods over the same transport is pointless;
# a timeout only condemns the method that hung
_STOP_MODE = (AttemptFailure.TRANSPORT, AttemptFailure.NETWORK)


class Connection:
    """An authenticated session bound to exactly one transport mode."""

    def __init__(
        self,
        profile: ServerProfile,
        backend: FileTransfer,
        auth_method: AuthMethod,
        attempts: list[ConnectAttempt] | None = None,
    ):
        self.profile = profile
        self.backend = backend
        self.auth_method = auth_method
        self.attempts = list(attempts or [])
        self._closed = False

    @property
    def mode(self) -> TransportMode:
        return self.backend.mode

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def supports_concurrent_channels(self) -> bool:
        return self.backend.supports_concurrent_channels

    async def close(self) -> None:
        """Close the session; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self.backend.close()

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<Connection {self.profile.host_key} mode={self.mode.value}>"


def classify_failure(attempts: list[ConnectAttempt]) -> ConnectErrorKind:
    """Pick the aggregate error kind for a failed connect()."""
    failures = [a.failure for a in attempts if a.failure is not None]
    tried = [f for f in failures if f != AttemptFailure.UNAVAILABLE]
    if AttemptFailure.AUTH_REJECTED in tried:
        return ConnectErrorKind.ALL_AUTH_METHODS_EXHAUSTED
    if tried and all(f == AttemptFailure.TIMEOUT for f in tried):
        return ConnectErrorKind.TIMEOUT
    if AttemptFailure.NETWORK in tried:
        return ConnectErrorKind.NETWORK_UNREACHABLE
    if AttemptFailure.TRANSPORT in tried:
        return ConnectErrorKind.TRANSPORT_UNAVAILABLE
    if AttemptFailure.TIMEOUT in tried:
        return ConnectErrorKind.TIMEOUT
    return ConnectErrorKind.ALL_AUTH_METHODS_EXHAUSTED


async def _try_mode(
    mode: TransportMode,
    opener: BackendOpener,
    profile: ServerProfile,
    chain: list[AuthMethod],
    settings: EngineSettings,
    attempts: list[ConnectAttempt],
) -> tuple[FileTransfer, AuthMethod] | None:
    for method in chain:
        try:
            backend = await opener(profile, method, settings)
        except AuthAttemptError as e:
            attempts.append(ConnectAttempt(mode, method, e.failure, str(e)))
            logger.debug("[%s] %s failed: %s", mode.value, method.describe(), e)
            if e.failure in _STOP_MODE:
                logger.info("%s mode unavailable for %s: %s", mode.value, profile.host_key, e)
                return None
            continue
        attempts.append(ConnectAttempt(mode, method))
        return backend, method
    return None


async def connect(
    profile: ServerProfile,
    chain: list[AuthMethod] | None = None,
    settings: EngineSettings | None = None,
    library_open: BackendOpener = LibraryBackend.open,
    native_open: BackendOpener = NativeToolBackend.open,
) -> Connection:
    """Authenticate to a server, falling back to the native tools.

    Every method of the chain is tried with the library first. Native-Tool
    Mode is only attempted once Library Mode is exhausted, and the first
    success decides the mode for the lifetime of the connection.

    Raises:
        ConnectError: If no method succeeded in either mode
    """
    settings = settings or EngineSettings()
    if chain is None:
        chain = auth.resolve(profile, probe_extra=settings.probe_extra_keys)

    attempts: list[ConnectAttempt] = []
    for mode, opener in (
        (TransportMode.LIBRARY, library_open),
        (TransportMode.NATIVE_TOOL, native_open),
    ):
        result = await _try_mode(mode, opener, profile, chain, settings, attempts)
        if result is not None:
            backend, method = result
            logger.info(
                "Authenticated to %s with %s (%s mode)",
                profile.host_key,
                method.describe(),
                mode.value,
            )
            return Connection(profile, backend, method, attempts)
        if mode == TransportMode.LIBRARY:
            logger.info("Library mode failed for %s, trying native tools", profile.host_key)

    error = ConnectError(classify_failure(attempts), attempts)
    logger.error("Connection to %s failed: %s", profile.host_key, error)
    raise error
