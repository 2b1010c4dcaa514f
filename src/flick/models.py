"""Data models for Flick."""

from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flick.connection import Connection
    from flick.errors import ListWarning, TransferError


class TransportMode(Enum):
    """Which transport backend a connection is bound to."""

    LIBRARY = "library"
    NATIVE_TOOL = "native_tool"


class AuthKind(Enum):
    """Authentication method variants, in chain priority order."""

    PASSWORD = "password"
    EXPLICIT_KEY = "explicit_key"
    AGENT = "agent"
    DEFAULT_KEY_PROBE = "default_key_probe"


@dataclass(frozen=True)
class ServerProfile:
    """Snapshot of a remote server's connection settings."""

    host: str
    username: str
    port: int = 22
    password: str | None = None
    key_path: str | None = None
    passphrase: str | None = None
    base_path: str = "/"
    name: str = ""

    @classmethod
    def from_string(
        cls,
        connection_string: str,
        port: int = 22,
        key_path: str | None = None,
        password: str | None = None,
    ) -> ServerProfile:
        """Parse user@host[:port] connection string."""
        if "@" in connection_string:
            username, hostname = connection_string.split("@", 1)
        else:
            username = ""
            hostname = connection_string
        if hostname.count(":") == 1:
            hostname, _, port_str = hostname.partition(":")
            if port_str.isdigit():
                port = int(port_str)
        return cls(
            host=hostname, username=username, port=port, key_path=key_path, password=password
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        d = {
            "name": self.name,
            "host": self.host,
            "username": self.username,
            "port": self.port,
            "key_path": self.key_path,
            "base_path": self.base_path,
        }
        # base64 only keeps the password out of casual view, it is not encryption
        if self.password:
            d["_pw"] = base64.b64encode(self.password.encode()).decode()
        if self.passphrase:
            d["_pp"] = base64.b64encode(self.passphrase.encode()).decode()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> ServerProfile:
        """Create from dictionary."""
        return cls(
            host=data["host"],
            username=data["username"],
            port=int(data.get("port", 22)),
            password=_decode_secret(data.get("_pw")) or data.get("password"),
            key_path=data.get("key_path") or None,
            passphrase=_decode_secret(data.get("_pp")) or data.get("passphrase"),
            base_path=data.get("base_path") or "/",
            name=data.get("name", ""),
        )

    @property
    def host_key(self) -> str:
        """Return unique identifier for this server."""
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def target(self) -> str:
        """user@host form used by the command-line tools."""
        return f"{self.username}@{self.host}" if self.username else self.host

    def __str__(self) -> str:
        return self.host_key


def _decode_secret(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return base64.b64decode(value).decode()
    except ValueError:
        return None


@dataclass(frozen=True)
class AuthMethod:
    """One entry of an authentication chain."""

    kind: AuthKind
    key_paths: tuple[str, ...] = ()
    agent_path: str | None = None

    @classmethod
    def password(cls) -> AuthMethod:
        return cls(AuthKind.PASSWORD)

    @classmethod
    def explicit_key(cls, path: str) -> AuthMethod:
        return cls(AuthKind.EXPLICIT_KEY, key_paths=(path,))

    @classmethod
    def agent(cls, agent_path: str) -> AuthMethod:
        return cls(AuthKind.AGENT, agent_path=agent_path)

    @classmethod
    def default_keys(cls, paths: list[str] | tuple[str, ...]) -> AuthMethod:
        return cls(AuthKind.DEFAULT_KEY_PROBE, key_paths=tuple(paths))

    def describe(self) -> str:
        """Log-safe description (never contains secrets)."""
        if self.kind == AuthKind.EXPLICIT_KEY:
            return f"key {self.key_paths[0]}"
        if self.kind == AuthKind.DEFAULT_KEY_PROBE:
            if not self.key_paths:
                return "default keys (none found)"
            names = ", ".join(PurePosixPath(p).name for p in self.key_paths)
            return f"default keys ({names})"
        return self.kind.value


@dataclass
class RemoteEntry:
    """Remote file or directory info."""

    name: str
    path: str
    is_dir: bool
    size: int | None = None
    mtime: datetime | None = None
    permissions: str | None = None
    is_link: bool = False

    @property
    def size_human(self) -> str:
        """Return human-readable file size."""
        if self.is_dir or self.size is None:
            return "<DIR>" if self.is_dir else "?"
        units = ["B", "KB", "MB", "GB", "TB"]
        size = float(self.size)
        for unit in units[:-1]:
            if size < 1024:
                return f"{size:.1f} {unit}"
            size /= 1024
        return f"{size:.1f} {units[-1]}"


@dataclass
class ListResult:
    """Entries of a directory listing plus an optional non-fatal warning."""

    entries: list[RemoteEntry] = field(default_factory=list)
    warning: ListWarning | None = None

    @property
    def ok(self) -> bool:
        return self.warning is None

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


class TransferDirection(Enum):
    """Transfer direction."""

    DOWNLOAD = "download"
    UPLOAD = "upload"


class TransferStatus(Enum):
    """Transfer status states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.SUCCEEDED, TransferStatus.FAILED, TransferStatus.CANCELLED)


@dataclass(frozen=True)
class ProgressEvent:
    """Progress snapshot of one transfer task."""

    task_id: str
    bytes_done: int
    bytes_total: int | None
    status: TransferStatus
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(eq=False)
class TransferTask:
    """A single file upload or download tracked by the queue."""

    id: str
    direction: TransferDirection
    local_path: str
    remote_path: str
    connection: Connection | None = field(default=None, repr=False)
    total_bytes: int | None = None
    bytes_transferred: int = 0
    status: TransferStatus = TransferStatus.QUEUED
    error: TransferError | None = None
    speed: float = 0.0  # bytes per second
    created_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def advance(self, bytes_done: int) -> bool:
        """Record progress; returns False when the value would go backwards."""
        if bytes_done < self.bytes_transferred:
            return False
        self.bytes_transferred = bytes_done
        return True

    @property
    def progress(self) -> float | None:
        """Return progress percentage (0-100), None when total is unknown."""
        if self.total_bytes is None:
            return None
        if self.total_bytes == 0:
            return 100.0
        return min(100.0, (self.bytes_transferred / self.total_bytes) * 100)

    @property
    def filename(self) -> str:
        """Return just the filename from the remote path."""
        return PurePosixPath(self.remote_path).name

    def to_event(self) -> ProgressEvent:
        return ProgressEvent(
            task_id=self.id,
            bytes_done=self.bytes_transferred,
            bytes_total=self.total_bytes,
            status=self.status,
            error=str(self.error) if self.error else None,
        )


@dataclass
class EngineSettings:
    """Engine settings."""

    max_concurrent_transfers: int = 1
    max_channels_per_connection: int = 1
    progress_byte_threshold: int = 256 * 1024
    progress_interval: float = 0.25  # seconds
    auth_timeout: float = 10.0  # seconds, per authentication attempt
    list_timeout: float = 15.0  # seconds
    cancel_grace: float = 0.5  # seconds before a cancelled worker is aborted
    chunk_size: int = 256 * 1024
    verify_host_keys: bool = True
    probe_extra_keys: bool = False
    ssh_command: str = "ssh"
    scp_command: str = "scp"
    sshpass_command: str = "sshpass"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "max_concurrent_transfers": self.max_concurrent_transfers,
            "max_channels_per_connection": self.max_channels_per_connection,
            "progress_byte_threshold": self.progress_byte_threshold,
            "progress_interval": self.progress_interval,
            "auth_timeout": self.auth_timeout,
            "list_timeout": self.list_timeout,
            "cancel_grace": self.cancel_grace,
            "chunk_size": self.chunk_size,
            "verify_host_keys": self.verify_host_keys,
            "probe_extra_keys": self.probe_extra_keys,
            "ssh_command": self.ssh_command,
            "scp_command": self.scp_command,
            "sshpass_command": self.sshpass_command,
        }

    @classmethod
    def from_dict(cls, data: dict) -> EngineSettings:
        """Create from dictionary, ignoring unknown keys."""
        defaults = cls()
        return cls(**{key: data.get(key, value) for key, value in defaults.to_dict().items()})


@dataclass
class TransferQueue:
    """Ordered transfer tasks with state queries used by the dispatcher."""

    tasks: list[TransferTask] = field(default_factory=list)
    max_concurrent: int = 1

    @property
    def active_count(self) -> int:
        """Count of currently running tasks."""
        return len([t for t in self.tasks if t.status == TransferStatus.RUNNING])

    @property
    def can_start_more(self) -> bool:
        """Whether the global limit allows another running task."""
        return self.active_count < self.max_concurrent

    def running_on(self, connection: Connection | None) -> int:
        """Count of running tasks bound to one connection."""
        return len(
            [
                t
                for t in self.tasks
                if t.status == TransferStatus.RUNNING and t.connection is connection
            ]
        )

    def get_next_queued(
        self, can_run: Callable[[TransferTask], bool] | None = None
    ) -> TransferTask | None:
        """First queued task in FIFO order that ``can_run`` accepts."""
        for t in self.tasks:
            if t.status == TransferStatus.QUEUED and (can_run is None or can_run(t)):
                return t
        return None

    def get_by_id(self, task_id: str) -> TransferTask | None:
        """Get task by ID."""
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def remove(self, task_id: str) -> bool:
        """Remove a task from the queue."""
        for i, t in enumerate(self.tasks):
            if t.id == task_id:
                self.tasks.pop(i)
                return True
        return False

    def move_up(self, task_id: str) -> bool:
        """Move a task one place towards the front of the queue."""
        for i, t in enumerate(self.tasks):
            if t.id == task_id and i > 0:
                self.tasks[i], self.tasks[i - 1] = self.tasks[i - 1], self.tasks[i]
                return True
        return False

    def move_down(self, task_id: str) -> bool:
        """Move a task one place towards the back of the queue."""
        for i, t in enumerate(self.tasks):
            if t.id == task_id and i < len(self.tasks) - 1:
                self.tasks[i], self.tasks[i + 1] = self.tasks[i + 1], self.tasks[i]
                return True
        return False

    def clear_finished(self) -> list[TransferTask]:
        """Drop terminal tasks, returning them."""
        finished = [t for t in self.tasks if t.status.is_terminal]
        self.tasks = [t for t in self.tasks if not t.status.is_terminal]
        return finished
