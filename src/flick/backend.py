"""Transport capability interface shared by the library and native-tool backends."""

from __future__ import annotations

import asyncio
import errno
import logging
import posixpath
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from flick.errors import TransferCancelled, TransferError, TransferErrorKind, is_connection_error
from flick.models import EngineSettings, ListResult, RemoteEntry, ServerProfile, TransportMode

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, "int | None"], None]


class CancelToken:
    """Cooperative cancellation flag shared between the queue and a backend."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransferCancelled()


class ProgressThrottle:
    """Rate-limits progress reports to a sink.

    A report goes out when either ``byte_threshold`` bytes or ``interval``
    seconds have passed since the last one. Values that do not move forward
    are dropped, and ``finish`` always reports the final count. Every call
    is a cancellation point.
    """

    def __init__(
        self,
        sink: ProgressSink | None,
        total: int | None,
        byte_threshold: int = 256 * 1024,
        interval: float = 0.25,
        token: CancelToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.total = total
        self.byte_threshold = max(1, byte_threshold)
        self.interval = interval
        self.token = token
        self._clock = clock
        self._last_bytes = -1
        self._last_time = clock()

    def _emit(self, bytes_done: int) -> None:
        self._last_bytes = bytes_done
        self._last_time = self._clock()
        if self.sink:
            self.sink(bytes_done, self.total)

    def start(self) -> None:
        if self.token:
            self.token.raise_if_cancelled()
        self._emit(0)

    def update(self, bytes_done: int) -> None:
        if self.token:
            self.token.raise_if_cancelled()
        if bytes_done <= self._last_bytes:
            return
        if (
            bytes_done - self._last_bytes >= self.byte_threshold
            or self._clock() - self._last_time >= self.interval
        ):
            self._emit(bytes_done)

    def finish(self, bytes_done: int) -> None:
        if bytes_done > self._last_bytes:
            self._emit(bytes_done)


def normalize_remote_path(path: str, base: str = "/") -> str:
    """Normalize a remote path to absolute POSIX form."""
    path = (path or ".").replace("\\", "/")
    if not path.startswith("/"):
        path = posixpath.join(base or "/", path)
    normalized = posixpath.normpath(path)
    # normpath keeps a leading double slash, POSIX allows it but we never want it
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def remote_join(directory: str, name: str) -> str:
    return posixpath.join(directory, name) if directory != "." else name


def local_source_size(path: Path) -> int:
    """Size of a local upload source, or SOURCE_NOT_FOUND."""
    if not path.exists():
        raise TransferError(TransferErrorKind.SOURCE_NOT_FOUND, f"Local file not found: {path}")
    if not path.is_file():
        raise TransferError(
            TransferErrorKind.SOURCE_NOT_FOUND, f"Local path is not a regular file: {path}"
        )
    return path.stat().st_size


def check_local_destination(path: Path) -> None:
    """Reject destinations that are directories or sit below an existing file."""
    if path.is_dir():
        raise TransferError(
            TransferErrorKind.DESTINATION_CONFLICT, f"Destination is a directory: {path}"
        )
    for parent in path.parents:
        if parent.exists():
            if not parent.is_dir():
                raise TransferError(
                    TransferErrorKind.DESTINATION_CONFLICT,
                    f"Destination parent is a file: {parent}",
                )
            break


def check_remote_destination(
    path: str, entry: RemoteEntry | None, parent: RemoteEntry | None
) -> None:
    """Remote counterpart of check_local_destination, given stat results."""
    if entry is not None and entry.is_dir:
        raise TransferError(
            TransferErrorKind.DESTINATION_CONFLICT, f"Remote destination is a directory: {path}"
        )
    if parent is not None and not parent.is_dir:
        raise TransferError(
            TransferErrorKind.DESTINATION_CONFLICT,
            f"Remote destination parent is a file: {parent.path}",
        )


def transfer_error_from_oserror(
    error: OSError, context: str = "Local file error"
) -> TransferError:
    """Map a local OSError to the transfer error taxonomy."""
    if is_connection_error(error):
        kind = TransferErrorKind.CONNECTION_LOST
    elif error.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        kind = TransferErrorKind.DISK_FULL
    elif error.errno == errno.ENOENT:
        kind = TransferErrorKind.SOURCE_NOT_FOUND
    elif error.errno in (errno.EISDIR, errno.ENOTDIR, errno.EEXIST):
        kind = TransferErrorKind.DESTINATION_CONFLICT
    else:
        kind = TransferErrorKind.IO_ERROR
    return TransferError(kind, f"{context}: {error}")


class FileTransfer(ABC):
    """Capability set every transport backend provides."""

    mode: TransportMode
    supports_concurrent_channels = False

    def __init__(self, profile: ServerProfile, settings: EngineSettings | None = None):
        self.profile = profile
        self.settings = settings or EngineSettings()

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    def remote_path(self, path: str) -> str:
        return normalize_remote_path(path, self.profile.base_path)

    def throttle(
        self, sink: ProgressSink | None, total: int | None, token: CancelToken | None
    ) -> ProgressThrottle:
        return ProgressThrottle(
            sink,
            total,
            byte_threshold=self.settings.progress_byte_threshold,
            interval=self.settings.progress_interval,
            token=token,
        )

    async def check_remote_destination(self, remote_path: str) -> None:
        entry = await self.stat(remote_path)
        parent_path = posixpath.dirname(remote_path)
        parent = None
        if parent_path and parent_path != remote_path:
            parent = await self.stat(parent_path)
        check_remote_destination(remote_path, entry, parent)

    @abstractmethod
    async def list_dir(self, path: str) -> ListResult:
        """List a remote directory (unsorted)."""

    @abstractmethod
    async def stat(self, path: str) -> RemoteEntry | None:
        """Return info for one remote path, or None if it does not exist."""

    @abstractmethod
    async def upload(
        self,
        local_path: str,
        remote_path: str,
        progress: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> None:
        """Copy a local file to the remote host, overwriting it."""

    @abstractmethod
    async def download(
        self,
        remote_path: str,
        local_path: str,
        progress: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> None:
        """Copy a remote file to the local host, overwriting it."""

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        """Create a remote directory and its parents."""

    @abstractmethod
    async def remove(self, path: str, recursive: bool = False) -> None: ...

    @abstractmethod
    async def rename(self, old_path: str, new_path: str) -> None: ...

    @abstractmethod
    async def run(self, command: str) -> str:
        """Run a shell command remotely and return its stdout."""

    @abstractmethod
    async def close(self) -> None: ...
