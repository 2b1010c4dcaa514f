"""Engine facade used by presentation layers."""

from __future__ import annotations

import logging
import os
import posixpath
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path, PurePosixPath

from flick import auth
from flick.connection import Connection, connect
from flick.listing import list_directory, walk_files
from flick.models import (
    EngineSettings,
    ListResult,
    ProgressEvent,
    ServerProfile,
    TransferDirection,
    TransferTask,
)
from flick.transfer import TransferManager

logger = logging.getLogger(__name__)


class Engine:
    """Connects to servers, lists directories and queues transfers.

    Connections returned by :meth:`connect` are the handles passed back into
    every other call. Closing the engine stops the queue and closes every
    connection it opened.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        on_progress: Callable[[TransferTask], None] | None = None,
        on_status_change: Callable[[TransferTask], None] | None = None,
        connector: Callable[..., Awaitable[Connection]] = connect,
    ):
        self.settings = settings or EngineSettings()
        self.transfers = TransferManager(self.settings, on_progress, on_status_change)
        self._connector = connector
        self._connections: list[Connection] = []

    @property
    def connections(self) -> list[Connection]:
        return [c for c in self._connections if not c.closed]

    async def connect(self, profile: ServerProfile) -> Connection:
        """Authenticate to a server. Raises ConnectError when every method fails."""
        chain = auth.resolve(profile, probe_extra=self.settings.probe_extra_keys)
        connection = await self._connector(profile, chain, self.settings)
        self._connections.append(connection)
        return connection

    async def list(self, connection: Connection, path: str = ".") -> ListResult:
        return await list_directory(connection, path, self.settings.list_timeout)

    def enqueue_transfer(
        self,
        connection: Connection,
        direction: TransferDirection,
        local_path: str,
        remote_path: str,
    ) -> str:
        return self.transfers.enqueue(connection, direction, local_path, remote_path)

    async def enqueue_directory(
        self,
        connection: Connection,
        direction: TransferDirection,
        local_dir: str,
        remote_dir: str,
    ) -> list[str]:
        """Queue every file below a directory, recreating its structure.

        Destination directories are created up front, so empty directories
        survive the copy. Returns the ids of the queued tasks.
        """
        task_ids = []
        if direction == TransferDirection.UPLOAD:
            base = Path(local_dir).expanduser()
            await connection.backend.mkdir(remote_dir)
            for root, dirs, files in os.walk(base):
                rel = Path(root).relative_to(base)
                remote_root = posixpath.join(remote_dir, *rel.parts) if rel.parts else remote_dir
                for name in sorted(dirs):
                    await connection.backend.mkdir(posixpath.join(remote_root, name))
                for name in sorted(files):
                    task_ids.append(
                        self.enqueue_transfer(
                            connection,
                            direction,
                            str(Path(root) / name),
                            posixpath.join(remote_root, name),
                        )
                    )
        else:
            base = connection.backend.remote_path(remote_dir)
            local_base = Path(local_dir).expanduser()
            local_base.mkdir(parents=True, exist_ok=True)
            async for entry in walk_files(connection, base, self.settings.list_timeout):
                rel = PurePosixPath(entry.path).relative_to(base)
                # Never write outside the destination directory
                if any(part in (".", "..") for part in rel.parts):
                    raise ValueError(f"Invalid path component in {entry.path}")
                task_ids.append(
                    self.enqueue_transfer(
                        connection, direction, str(local_base.joinpath(*rel.parts)), entry.path
                    )
                )
        source = local_dir if direction == TransferDirection.UPLOAD else remote_dir
        logger.info("Queued %d file(s) from %s", len(task_ids), source)
        return task_ids

    def subscribe_progress(self, task_id: str) -> AsyncIterator[ProgressEvent]:
        return self.transfers.subscribe(task_id)

    def cancel(self, task_id: str) -> bool:
        return self.transfers.cancel(task_id)

    async def wait(self, task_id: str) -> TransferTask:
        return await self.transfers.wait(task_id)

    async def mkdir(self, connection: Connection, path: str) -> None:
        await connection.backend.mkdir(path)

    async def remove(self, connection: Connection, path: str, recursive: bool = False) -> None:
        await connection.backend.remove(path, recursive)

    async def rename(self, connection: Connection, old_path: str, new_path: str) -> None:
        await connection.backend.rename(old_path, new_path)

    async def disconnect(self, connection: Connection) -> None:
        """Cancel the connection's transfers and close it."""
        cancelled = [
            task.id
            for task in list(self.transfers.queue.tasks)
            if task.connection is connection and self.transfers.cancel(task.id)
        ]
        for task_id in cancelled:
            await self.transfers.wait(task_id)
        await connection.close()
        if connection in self._connections:
            self._connections.remove(connection)

    async def close(self) -> None:
        """Stop all transfers and close every connection."""
        await self.transfers.stop()
        for connection in list(self._connections):
            await connection.close()
        self._connections.clear()

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
