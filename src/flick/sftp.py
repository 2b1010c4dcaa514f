"""Library Mode backend: SFTP over asyncssh."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from datetime import datetime
from pathlib import Path

import asyncssh

from flick.backend import (
    CancelToken,
    FileTransfer,
    ProgressSink,
    check_local_destination,
    local_source_size,
    remote_join,
    transfer_error_from_oserror,
)
from flick.errors import (
    AttemptFailure,
    AuthAttemptError,
    ListError,
    ListErrorKind,
    TransferError,
    TransferErrorKind,
    is_connection_error,
)
from flick.models import (
    AuthKind,
    AuthMethod,
    EngineSettings,
    ListResult,
    RemoteEntry,
    ServerProfile,
    TransportMode,
)

logger = logging.getLogger(__name__)

# SFTP status codes (draft-ietf-secsh-filexfer), newer ones are not exported by every asyncssh
FX_NO_SUCH_FILE = 2
FX_PERMISSION_DENIED = 3
FX_CONNECTION_LOST = 7
FX_NO_SPACE_ON_FILESYSTEM = 14
FX_QUOTA_EXCEEDED = 15
FX_NOT_A_DIRECTORY = 19
FX_FILE_IS_A_DIRECTORY = 24

_TRANSFER_KINDS = {
    FX_NO_SUCH_FILE: TransferErrorKind.SOURCE_NOT_FOUND,
    FX_CONNECTION_LOST: TransferErrorKind.CONNECTION_LOST,
    FX_NO_SPACE_ON_FILESYSTEM: TransferErrorKind.DISK_FULL,
    FX_QUOTA_EXCEEDED: TransferErrorKind.REMOTE_QUOTA_EXCEEDED,
    FX_NOT_A_DIRECTORY: TransferErrorKind.DESTINATION_CONFLICT,
    FX_FILE_IS_A_DIRECTORY: TransferErrorKind.DESTINATION_CONFLICT,
}

_LIST_KINDS = {
    FX_NO_SUCH_FILE: ListErrorKind.PATH_NOT_FOUND,
    FX_NOT_A_DIRECTORY: ListErrorKind.PATH_NOT_FOUND,
    FX_PERMISSION_DENIED: ListErrorKind.PERMISSION_DENIED,
    FX_CONNECTION_LOST: ListErrorKind.CONNECTION_LOST,
}


def format_permissions(mode: int) -> str:
    """Format permissions as rwxrwxrwx string."""
    perms = ""
    for i in range(8, -1, -1):
        if mode & (1 << i):
            perms += "rwx"[2 - (i % 3)]
        else:
            perms += "-"
    return perms


def _entry_from_attrs(name: str, path: str, attrs: asyncssh.SFTPAttrs) -> RemoteEntry:
    is_dir = attrs.type == asyncssh.FILEXFER_TYPE_DIRECTORY
    mtime = datetime.fromtimestamp(attrs.mtime) if attrs.mtime else None
    return RemoteEntry(
        name=name,
        path=path,
        is_dir=is_dir,
        size=None if is_dir else attrs.size,
        mtime=mtime,
        permissions=format_permissions(attrs.permissions) if attrs.permissions else None,
        is_link=attrs.type == asyncssh.FILEXFER_TYPE_SYMLINK,
    )


def transfer_error_from_sftp(error: asyncssh.SFTPError, context: str) -> TransferError:
    kind = _TRANSFER_KINDS.get(error.code, TransferErrorKind.IO_ERROR)
    return TransferError(kind, f"{context}: {error.reason or error}")


def _attempt_error(error: BaseException) -> AuthAttemptError:
    """Classify an asyncssh.connect failure for the authentication chain."""
    # PermissionDenied derives from DisconnectError, so it must be checked first
    if isinstance(error, asyncssh.PermissionDenied):
        return AuthAttemptError(AttemptFailure.AUTH_REJECTED, f"Permission denied: {error}")
    if isinstance(error, (asyncssh.KeyImportError, asyncssh.KeyEncryptionError)):
        return AuthAttemptError(AttemptFailure.AUTH_REJECTED, f"Unusable key: {error}")
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return AuthAttemptError(AttemptFailure.TIMEOUT, "Timed out during authentication")
    if isinstance(error, asyncssh.HostKeyNotVerifiable):
        return AuthAttemptError(
            AttemptFailure.TRANSPORT,
            f"Host key verification failed: {error}. Add host to ~/.ssh/known_hosts",
        )
    if isinstance(error, asyncssh.Error):
        return AuthAttemptError(AttemptFailure.TRANSPORT, f"Failed to connect: {error}")
    return AuthAttemptError(AttemptFailure.NETWORK, f"Connection error: {error}")


class LibraryBackend(FileTransfer):
    """SFTP backend bound to one authenticated asyncssh connection."""

    mode = TransportMode.LIBRARY
    supports_concurrent_channels = True

    def __init__(
        self,
        profile: ServerProfile,
        settings: EngineSettings | None = None,
        conn: asyncssh.SSHClientConnection | None = None,
        sftp: asyncssh.SFTPClient | None = None,
    ):
        super().__init__(profile, settings)
        self._conn = conn
        self._sftp = sftp

    @property
    def connected(self) -> bool:
        """Check if connected."""
        return self._conn is not None and self._sftp is not None

    @staticmethod
    def connect_options(
        profile: ServerProfile, method: AuthMethod, settings: EngineSettings
    ) -> dict:
        """asyncssh.connect keyword arguments restricted to one auth method."""
        if settings.verify_host_keys:
            # Use system known_hosts file for host key verification
            known_hosts_path = Path.home() / ".ssh" / "known_hosts"
            known_hosts = str(known_hosts_path) if known_hosts_path.exists() else ()
        else:
            known_hosts = None

        options = {
            "host": profile.host,
            "port": profile.port,
            "username": profile.username or None,
            "known_hosts": known_hosts,
            "compression_algs": None,
            "connect_timeout": settings.auth_timeout,
            "agent_path": None,
            "client_keys": None,
            "password": None,
            "kbdint_auth": False,
        }
        if method.kind == AuthKind.PASSWORD:
            options["password"] = profile.password
            options["kbdint_auth"] = True
            options["preferred_auth"] = ["password", "keyboard-interactive"]
        elif method.kind == AuthKind.AGENT:
            del options["client_keys"]
            options["agent_path"] = method.agent_path
            options["preferred_auth"] = ["publickey"]
        else:
            options["client_keys"] = list(method.key_paths)
            options["passphrase"] = profile.passphrase
            options["ignore_encrypted"] = method.kind == AuthKind.DEFAULT_KEY_PROBE
            options["preferred_auth"] = ["publickey"]
        return options

    @classmethod
    async def open(
        cls,
        profile: ServerProfile,
        method: AuthMethod,
        settings: EngineSettings | None = None,
    ) -> LibraryBackend:
        """Authenticate with a single method and start an SFTP session."""
        settings = settings or EngineSettings()
        if method.kind in (AuthKind.EXPLICIT_KEY, AuthKind.DEFAULT_KEY_PROBE):
            missing = [p for p in method.key_paths if not Path(p).is_file()]
            if method.kind == AuthKind.EXPLICIT_KEY and missing:
                raise AuthAttemptError(
                    AttemptFailure.UNAVAILABLE, f"Key file not found: {missing[0]}"
                )
            if not method.key_paths:
                raise AuthAttemptError(AttemptFailure.UNAVAILABLE, "No default keys found")

        logger.debug("Connecting to %s (%s)", profile.host_key, method.describe())
        options = cls.connect_options(profile, method, settings)
        try:
            conn = await asyncssh.connect(**options)
        except (
            asyncssh.Error,
            asyncssh.KeyImportError,
            asyncssh.KeyEncryptionError,
            OSError,
            asyncio.TimeoutError,
        ) as e:
            raise _attempt_error(e) from e

        try:
            sftp = await asyncio.wait_for(conn.start_sftp_client(), settings.auth_timeout)
        except BaseException as e:
            conn.close()
            if isinstance(e, (asyncssh.Error, OSError, asyncio.TimeoutError)):
                raise AuthAttemptError(
                    AttemptFailure.TRANSPORT, f"SFTP subsystem unavailable: {e}"
                ) from e
            raise

        logger.info("Connected to %s via SFTP", profile.host_key)
        return cls(profile, settings, conn, sftp)

    def _require(self) -> asyncssh.SFTPClient:
        if not self._sftp:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, "Not connected")
        return self._sftp

    async def close(self) -> None:
        """Close the connection."""
        if self._sftp:
            self._sftp.exit()
            self._sftp = None
        if self._conn:
            logger.debug("Disconnecting from %s", self.profile.host_key)
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None
            logger.info("Disconnected from %s", self.profile.host_key)

    async def list_dir(self, path: str) -> ListResult:
        if not self._sftp:
            raise ListError(ListErrorKind.CONNECTION_LOST, "Not connected")

        path = self.remote_path(path)
        logger.debug("Listing directory: %s", path)
        try:
            names = await self._sftp.readdir(path)
        except asyncssh.SFTPError as e:
            kind = _LIST_KINDS.get(e.code, ListErrorKind.REMOTE_ERROR)
            raise ListError(kind, f"Failed to list {path}: {e.reason or e}") from e
        except (asyncssh.Error, OSError) as e:
            if is_connection_error(e):
                raise ListError(ListErrorKind.CONNECTION_LOST, f"Connection lost: {e}") from e
            raise ListError(ListErrorKind.REMOTE_ERROR, f"Failed to list {path}: {e}") from e

        entries = []
        for name in names:
            if name.filename in (".", ".."):
                continue
            filename = name.filename
            if isinstance(filename, bytes):
                filename = filename.decode("utf-8", errors="replace")
            entries.append(_entry_from_attrs(filename, remote_join(path, filename), name.attrs))
        return ListResult(entries)

    async def stat(self, path: str) -> RemoteEntry | None:
        sftp = self._require()
        path = self.remote_path(path)
        try:
            attrs = await sftp.stat(path)
        except asyncssh.SFTPError as e:
            if e.code == FX_NO_SUCH_FILE:
                return None
            raise transfer_error_from_sftp(e, f"Failed to stat {path}") from e
        except asyncssh.Error as e:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, f"Failed to stat {path}") from e
        return _entry_from_attrs(posixpath.basename(path) or path, path, attrs)

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        progress: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> None:
        """Upload a local file in chunks, checking for cancellation between writes."""
        sftp = self._require()
        source = Path(local_path).expanduser()
        remote_path = self.remote_path(remote_path)
        total = local_source_size(source)
        throttle = self.throttle(progress, total, token)
        throttle.start()

        try:
            await self.check_remote_destination(remote_path)
            parent = posixpath.dirname(remote_path)
            if parent and parent != "/":
                await sftp.makedirs(parent, exist_ok=True)

            async with sftp.open(remote_path, "wb") as remote_file:
                with open(source, "rb") as local_file:
                    bytes_transferred = 0
                    while True:
                        chunk = local_file.read(self.settings.chunk_size)
                        if not chunk:
                            break
                        await remote_file.write(chunk)
                        bytes_transferred += len(chunk)
                        throttle.update(bytes_transferred)
        except asyncssh.SFTPError as e:
            raise transfer_error_from_sftp(e, "Upload failed") from e
        except asyncssh.Error as e:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, f"Upload failed: {e}") from e
        except OSError as e:
            raise transfer_error_from_oserror(e) from e

        throttle.finish(bytes_transferred)
        logger.debug("Uploaded %s -> %s (%d bytes)", source, remote_path, bytes_transferred)

    async def download(
        self,
        remote_path: str,
        local_path: str,
        progress: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> None:
        """Download a remote file in chunks, checking for cancellation between reads."""
        sftp = self._require()
        remote_path = self.remote_path(remote_path)
        destination = Path(local_path).expanduser()

        try:
            attrs = await sftp.stat(remote_path)
        except asyncssh.SFTPError as e:
            raise transfer_error_from_sftp(e, f"Remote file {remote_path}") from e
        except asyncssh.Error as e:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, f"Download failed: {e}") from e
        if attrs.type == asyncssh.FILEXFER_TYPE_DIRECTORY:
            raise TransferError(
                TransferErrorKind.SOURCE_NOT_FOUND, f"Remote path is a directory: {remote_path}"
            )

        check_local_destination(destination)
        throttle = self.throttle(progress, attrs.size, token)
        throttle.start()

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            async with sftp.open(remote_path, "rb") as remote_file:
                with open(destination, "wb") as local_file:
                    bytes_transferred = 0
                    while True:
                        chunk = await remote_file.read(self.settings.chunk_size)
                        if not chunk:
                            break
                        local_file.write(chunk)
                        bytes_transferred += len(chunk)
                        throttle.update(bytes_transferred)
        except asyncssh.SFTPError as e:
            raise transfer_error_from_sftp(e, "Download failed") from e
        except asyncssh.Error as e:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, f"Download failed: {e}") from e
        except OSError as e:
            raise transfer_error_from_oserror(e) from e

        throttle.finish(bytes_transferred)
        logger.debug("Downloaded %s -> %s (%d bytes)", remote_path, destination, bytes_transferred)

    async def mkdir(self, path: str) -> None:
        sftp = self._require()
        path = self.remote_path(path)
        try:
            await sftp.makedirs(path, exist_ok=True)
        except asyncssh.SFTPError as e:
            raise transfer_error_from_sftp(e, f"Failed to create {path}") from e

    async def remove(self, path: str, recursive: bool = False) -> None:
        sftp = self._require()
        path = self.remote_path(path)
        try:
            if await sftp.isdir(path):
                if recursive:
                    await sftp.rmtree(path)
                else:
                    await sftp.rmdir(path)
            else:
                await sftp.remove(path)
        except asyncssh.SFTPError as e:
            raise transfer_error_from_sftp(e, f"Failed to remove {path}") from e

    async def rename(self, old_path: str, new_path: str) -> None:
        sftp = self._require()
        old_path = self.remote_path(old_path)
        new_path = self.remote_path(new_path)
        try:
            await sftp.rename(old_path, new_path)
        except asyncssh.SFTPError as e:
            raise transfer_error_from_sftp(e, f"Failed to rename {old_path}") from e

    async def run(self, command: str) -> str:
        if not self._conn:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, "Not connected")
        try:
            result = await self._conn.run(command, check=False)
        except asyncssh.Error as e:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, f"Command failed: {e}") from e
        if result.exit_status:
            raise TransferError(
                TransferErrorKind.IO_ERROR,
                f"Command exited with {result.exit_status}: {str(result.stderr or '').strip()}",
            )
        return str(result.stdout or "")
