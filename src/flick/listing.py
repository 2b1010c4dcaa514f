"""Remote directory listing on top of a connection's backend."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from flick.connection import Connection
from flick.errors import ListError, ListErrorKind, is_connection_error
from flick.models import ListResult, RemoteEntry

logger = logging.getLogger(__name__)


def sort_entries(entries: list[RemoteEntry]) -> list[RemoteEntry]:
    """Directories first, then by name."""
    return sorted(entries, key=lambda e: (not e.is_dir, e.name.lower(), e.name))


async def list_directory(
    connection: Connection, path: str = ".", timeout: float | None = None
) -> ListResult:
    """List a remote directory.

    Lines the backend could not interpret are skipped; the result then
    carries a ListWarning instead of failing the whole listing.

    Raises:
        ListError: If the directory cannot be listed at all
    """
    if connection.closed:
        raise ListError(ListErrorKind.CONNECTION_LOST, "Connection is closed")
    if timeout is None:
        timeout = connection.backend.settings.list_timeout

    try:
        result = await asyncio.wait_for(connection.backend.list_dir(path), timeout)
    except asyncio.TimeoutError as e:
        raise ListError(ListErrorKind.TIMEOUT, f"Listing {path} timed out after {timeout}s") from e
    except ListError:
        raise
    except OSError as e:
        kind = ListErrorKind.REMOTE_ERROR
        if is_connection_error(e):
            kind = ListErrorKind.CONNECTION_LOST
        raise ListError(kind, f"Failed to list {path}: {e}") from e

    if result.warning:
        logger.warning("Listing %s on %s: %s", path, connection.profile.host_key, result.warning)
        for sample in result.warning.samples:
            logger.debug("Unparsable line: %r", sample)
    return ListResult(sort_entries(result.entries), result.warning)


async def walk_files(
    connection: Connection, path: str, timeout: float | None = None
) -> AsyncIterator[RemoteEntry]:
    """Yield every file below a remote directory, depth first.

    Symlinks to files are yielded as the file they point to. Symlinked
    directories and dangling links are skipped, so the walk never follows a
    link cycle.
    """
    listing = await list_directory(connection, path, timeout)
    for entry in listing.entries:
        if entry.is_link:
            target = await connection.backend.stat(entry.path)
            if target is None or target.is_dir:
                logger.debug("Skipping link %s", entry.path)
                continue
            yield target
        elif entry.is_dir:
            async for child in walk_files(connection, entry.path, timeout):
                yield child
        else:
            yield entry
