"""Tests for the asyncssh SFTP backend."""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from flick.backend import CancelToken
from flick.errors import (
    AttemptFailure,
    AuthAttemptError,
    ListError,
    ListErrorKind,
    TransferCancelled,
    TransferError,
    TransferErrorKind,
)
from flick.connection import Connection
from flick.models import (
    AuthMethod,
    EngineSettings,
    ServerProfile,
    TransferDirection,
    TransferStatus,
)
from flick.sftp import LibraryBackend, format_permissions
from flick.transfer import TransferManager


def _attrs(type_=asyncssh.FILEXFER_TYPE_REGULAR, size=0, mtime=1704067200, permissions=0o644):
    attrs = MagicMock()
    attrs.type = type_
    attrs.size = size
    attrs.mtime = mtime
    attrs.permissions = permissions
    return attrs


def _name(filename, attrs):
    entry = MagicMock()
    entry.filename = filename
    entry.attrs = attrs
    return entry


class FakeRemoteFile:
    """Async context manager standing in for an SFTP file handle."""

    def __init__(self, data=b"", fail_on_write=None):
        self.data = data
        self.written = bytearray()
        self.fail_on_write = fail_on_write
        self._offset = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def read(self, size):
        chunk = self.data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk

    async def write(self, chunk):
        if self.fail_on_write:
            raise self.fail_on_write
        self.written.extend(chunk)


def _backend(sftp=None, conn=None, base_path="/"):
    profile = ServerProfile(host="example.com", username="user", base_path=base_path)
    settings = EngineSettings(chunk_size=4, progress_byte_threshold=1)
    return LibraryBackend(profile, settings, conn or MagicMock(), sftp or AsyncMock())


class TestConnectOptions:
    """Tests for per-method asyncssh.connect arguments."""

    def setup_method(self):
        self.profile = ServerProfile(
            host="example.com", username="user", port=2222, password="pw", passphrase="pp"
        )
        self.settings = EngineSettings(auth_timeout=3.0)

    def test_password_disables_keys_and_agent(self):
        options = LibraryBackend.connect_options(
            self.profile, AuthMethod.password(), self.settings
        )
        assert options["password"] == "pw"
        assert options["client_keys"] is None
        assert options["agent_path"] is None
        assert options["kbdint_auth"] is True
        assert options["port"] == 2222
        assert options["connect_timeout"] == 3.0

    def test_agent_uses_agent_only(self):
        options = LibraryBackend.connect_options(
            self.profile, AuthMethod.agent("/tmp/agent.sock"), self.settings
        )
        assert options["agent_path"] == "/tmp/agent.sock"
        assert "client_keys" not in options
        assert options["password"] is None

    def test_explicit_key(self):
        options = LibraryBackend.connect_options(
            self.profile, AuthMethod.explicit_key("/k/work"), self.settings
        )
        assert options["client_keys"] == ["/k/work"]
        assert options["passphrase"] == "pp"
        assert options["ignore_encrypted"] is False
        assert options["agent_path"] is None

    def test_default_keys_skip_encrypted(self):
        options = LibraryBackend.connect_options(
            self.profile, AuthMethod.default_keys(["/k/id_rsa"]), self.settings
        )
        assert options["ignore_encrypted"] is True

    def test_host_key_verification_off(self):
        settings = EngineSettings(verify_host_keys=False)
        options = LibraryBackend.connect_options(self.profile, AuthMethod.password(), settings)
        assert options["known_hosts"] is None


class TestLibraryOpen:
    """Tests for LibraryBackend.open and attempt classification."""

    def setup_method(self):
        self.profile = ServerProfile(host="example.com", username="user", password="pw")

    @pytest.mark.asyncio
    async def test_open_success(self):
        mock_conn = MagicMock()
        mock_conn.start_sftp_client = AsyncMock(return_value=AsyncMock())

        with patch("asyncssh.connect", AsyncMock(return_value=mock_conn)) as mock_connect:
            backend = await LibraryBackend.open(self.profile, AuthMethod.password())

        assert backend.connected is True
        mock_connect.assert_awaited_once()
        assert mock_connect.call_args.kwargs["password"] == "pw"

    @pytest.mark.asyncio
    async def test_missing_explicit_key_unavailable(self):
        """A missing key file is skipped without touching the network."""
        method = AuthMethod.explicit_key("/nonexistent/key")
        with patch("asyncssh.connect", AsyncMock()) as mock_connect:
            with pytest.raises(AuthAttemptError) as exc_info:
                await LibraryBackend.open(self.profile, method)
        assert exc_info.value.failure == AttemptFailure.UNAVAILABLE
        mock_connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_default_keys_unavailable(self):
        with pytest.raises(AuthAttemptError) as exc_info:
            await LibraryBackend.open(self.profile, AuthMethod.default_keys([]))
        assert exc_info.value.failure == AttemptFailure.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_permission_denied_is_auth_rejected(self):
        with patch("asyncssh.connect", side_effect=asyncssh.PermissionDenied("denied")):
            with pytest.raises(AuthAttemptError) as exc_info:
                await LibraryBackend.open(self.profile, AuthMethod.password())
        assert exc_info.value.failure == AttemptFailure.AUTH_REJECTED

    @pytest.mark.asyncio
    async def test_host_key_failure_is_transport(self):
        with patch("asyncssh.connect", side_effect=asyncssh.HostKeyNotVerifiable("bad key")):
            with pytest.raises(AuthAttemptError, match="Host key verification failed") as exc_info:
                await LibraryBackend.open(self.profile, AuthMethod.password())
        assert exc_info.value.failure == AttemptFailure.TRANSPORT

    @pytest.mark.asyncio
    async def test_network_error(self):
        with patch("asyncssh.connect", side_effect=OSError("Connection refused")):
            with pytest.raises(AuthAttemptError) as exc_info:
                await LibraryBackend.open(self.profile, AuthMethod.password())
        assert exc_info.value.failure == AttemptFailure.NETWORK

    @pytest.mark.asyncio
    async def test_timeout(self):
        with patch("asyncssh.connect", side_effect=TimeoutError()):
            with pytest.raises(AuthAttemptError) as exc_info:
                await LibraryBackend.open(self.profile, AuthMethod.password())
        assert exc_info.value.failure == AttemptFailure.TIMEOUT

    @pytest.mark.asyncio
    async def test_sftp_subsystem_failure_closes_connection(self):
        mock_conn = MagicMock()
        mock_conn.start_sftp_client = AsyncMock(
            side_effect=asyncssh.ChannelOpenError(1, "subsystem request failed")
        )

        with patch("asyncssh.connect", AsyncMock(return_value=mock_conn)):
            with pytest.raises(AuthAttemptError) as exc_info:
                await LibraryBackend.open(self.profile, AuthMethod.password())

        assert exc_info.value.failure == AttemptFailure.TRANSPORT
        mock_conn.close.assert_called_once()


class TestLibraryListing:
    """Tests for list_dir and stat."""

    @pytest.mark.asyncio
    async def test_list_dir_entries(self):
        sftp = AsyncMock()
        sftp.readdir = AsyncMock(
            return_value=[
                _name(".", _attrs(asyncssh.FILEXFER_TYPE_DIRECTORY)),
                _name("..", _attrs(asyncssh.FILEXFER_TYPE_DIRECTORY)),
                _name("file.txt", _attrs(size=1000)),
                _name("subdir", _attrs(asyncssh.FILEXFER_TYPE_DIRECTORY, size=4096)),
            ]
        )
        backend = _backend(sftp)

        result = await backend.list_dir("/srv")

        assert result.ok
        by_name = {e.name: e for e in result.entries}
        assert set(by_name) == {"file.txt", "subdir"}
        assert by_name["file.txt"].size == 1000
        assert by_name["file.txt"].path == "/srv/file.txt"
        assert by_name["file.txt"].permissions == "rw-r--r--"
        assert by_name["subdir"].is_dir is True
        assert by_name["subdir"].size is None

    @pytest.mark.asyncio
    async def test_list_dir_relative_to_base_path(self):
        sftp = AsyncMock()
        sftp.readdir = AsyncMock(return_value=[])
        backend = _backend(sftp, base_path="/home/user")

        await backend.list_dir("docs")

        sftp.readdir.assert_awaited_once_with("/home/user/docs")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,kind",
        [
            (2, ListErrorKind.PATH_NOT_FOUND),
            (3, ListErrorKind.PERMISSION_DENIED),
            (4, ListErrorKind.REMOTE_ERROR),
        ],
    )
    async def test_list_dir_errors(self, code, kind):
        sftp = AsyncMock()
        sftp.readdir = AsyncMock(side_effect=asyncssh.SFTPError(code, "failed"))
        backend = _backend(sftp)

        with pytest.raises(ListError) as exc_info:
            await backend.list_dir("/srv")
        assert exc_info.value.kind == kind

    @pytest.mark.asyncio
    async def test_list_dir_not_connected(self):
        backend = LibraryBackend(ServerProfile(host="h", username="u"))
        with pytest.raises(ListError) as exc_info:
            await backend.list_dir("/")
        assert exc_info.value.kind == ListErrorKind.CONNECTION_LOST

    @pytest.mark.asyncio
    async def test_stat_missing_returns_none(self):
        sftp = AsyncMock()
        sftp.stat = AsyncMock(side_effect=asyncssh.SFTPError(2, "No such file"))
        backend = _backend(sftp)

        assert await backend.stat("/missing") is None

    @pytest.mark.asyncio
    async def test_stat_other_error_raises(self):
        sftp = AsyncMock()
        sftp.stat = AsyncMock(side_effect=asyncssh.SFTPError(3, "Permission denied"))
        backend = _backend(sftp)

        with pytest.raises(TransferError):
            await backend.stat("/secret")


class TestLibraryTransfers:
    """Tests for chunked upload and download."""

    @pytest.mark.asyncio
    async def test_download_writes_file_and_reports_progress(self):
        remote = FakeRemoteFile(b"0123456789")
        sftp = AsyncMock()
        sftp.stat = AsyncMock(return_value=_attrs(size=10))
        sftp.open = MagicMock(return_value=remote)
        backend = _backend(sftp)
        reports = []

        with tempfile.TemporaryDirectory() as tmpdir:
            destination = Path(tmpdir) / "nested" / "out.bin"
            await backend.download(
                "/srv/in.bin", str(destination), lambda done, total: reports.append((done, total))
            )
            assert destination.read_bytes() == b"0123456789"

        assert reports[0] == (0, 10)
        assert reports[-1] == (10, 10)
        assert [done for done, _ in reports] == sorted(done for done, _ in reports)

    @pytest.mark.asyncio
    async def test_download_directory_rejected(self):
        sftp = AsyncMock()
        sftp.stat = AsyncMock(return_value=_attrs(asyncssh.FILEXFER_TYPE_DIRECTORY))
        backend = _backend(sftp)

        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(TransferError) as exc_info:
                await backend.download("/srv", str(Path(tmpdir) / "x"))
        assert exc_info.value.kind == TransferErrorKind.SOURCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_download_connection_dropped_before_copy(self):
        sftp = AsyncMock()
        sftp.stat = AsyncMock(side_effect=asyncssh.ConnectionLost("Connection lost"))
        backend = _backend(sftp)

        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(TransferError) as exc_info:
                await backend.download("/srv/in.bin", str(Path(tmpdir) / "x"))
        assert exc_info.value.kind == TransferErrorKind.CONNECTION_LOST

    @pytest.mark.asyncio
    async def test_dropped_connection_fails_queued_download(self):
        """A session lost before the copy starts ends the task as CONNECTION_LOST."""
        sftp = AsyncMock()
        sftp.stat = AsyncMock(side_effect=asyncssh.ConnectionLost("Connection lost"))
        backend = _backend(sftp)
        connection = Connection(backend.profile, backend, AuthMethod.password())
        manager = TransferManager(backend.settings)

        with tempfile.TemporaryDirectory() as tmpdir:
            task_id = manager.enqueue(
                connection, TransferDirection.DOWNLOAD, str(Path(tmpdir) / "x"), "/srv/in.bin"
            )
            task = await manager.wait(task_id)

        assert task.status == TransferStatus.FAILED
        assert task.error.kind == TransferErrorKind.CONNECTION_LOST

    @pytest.mark.asyncio
    async def test_download_missing_source(self):
        sftp = AsyncMock()
        sftp.stat = AsyncMock(side_effect=asyncssh.SFTPError(2, "No such file"))
        backend = _backend(sftp)

        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(TransferError) as exc_info:
                await backend.download("/srv/gone", str(Path(tmpdir) / "x"))
        assert exc_info.value.kind == TransferErrorKind.SOURCE_NOT_FOUND

    def _upload_sftp(self, remote):
        async def stat(path):
            if path == "/srv":
                return _attrs(asyncssh.FILEXFER_TYPE_DIRECTORY)
            raise asyncssh.SFTPError(2, "No such file")

        sftp = AsyncMock()
        sftp.stat = AsyncMock(side_effect=stat)
        sftp.open = MagicMock(return_value=remote)
        return sftp

    @pytest.mark.asyncio
    async def test_upload(self):
        remote = FakeRemoteFile()
        sftp = self._upload_sftp(remote)
        backend = _backend(sftp)
        reports = []

        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "in.bin"
            source.write_bytes(b"x" * 10)
            await backend.upload(
                str(source), "/srv/out.bin", lambda done, total: reports.append(done)
            )

        assert bytes(remote.written) == b"x" * 10
        assert reports[-1] == 10
        sftp.makedirs.assert_awaited_once_with("/srv", exist_ok=True)

    @pytest.mark.asyncio
    async def test_upload_disk_full(self):
        remote = FakeRemoteFile(fail_on_write=asyncssh.SFTPError(14, "No space left"))
        backend = _backend(self._upload_sftp(remote))

        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "in.bin"
            source.write_bytes(b"x" * 10)
            with pytest.raises(TransferError) as exc_info:
                await backend.upload(str(source), "/srv/out.bin")
        assert exc_info.value.kind == TransferErrorKind.DISK_FULL

    @pytest.mark.asyncio
    async def test_upload_cancelled_before_start(self):
        remote = FakeRemoteFile()
        backend = _backend(self._upload_sftp(remote))
        token = CancelToken()
        token.cancel()

        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "in.bin"
            source.write_bytes(b"x" * 10)
            with pytest.raises(TransferCancelled):
                await backend.upload(str(source), "/srv/out.bin", token=token)
        assert remote.written == bytearray()

    @pytest.mark.asyncio
    async def test_upload_missing_source(self):
        backend = _backend()
        with pytest.raises(TransferError) as exc_info:
            await backend.upload("/nonexistent/in.bin", "/srv/out.bin")
        assert exc_info.value.kind == TransferErrorKind.SOURCE_NOT_FOUND


class TestLibraryCommands:
    """Tests for remote file operations."""

    @pytest.mark.asyncio
    async def test_remove_directory_recursive(self):
        sftp = AsyncMock()
        sftp.isdir = AsyncMock(return_value=True)
        backend = _backend(sftp)

        await backend.remove("/srv/old", recursive=True)

        sftp.rmtree.assert_awaited_once_with("/srv/old")

    @pytest.mark.asyncio
    async def test_run_nonzero_exit(self):
        conn = MagicMock()
        result = MagicMock(exit_status=1, stdout="", stderr="boom\n")
        conn.run = AsyncMock(return_value=result)
        backend = _backend(conn=conn)

        with pytest.raises(TransferError, match="boom"):
            await backend.run("false")

    @pytest.mark.asyncio
    async def test_close(self):
        sftp = MagicMock()
        conn = MagicMock()
        conn.wait_closed = AsyncMock()
        backend = _backend(sftp, conn)

        await backend.close()

        assert backend.connected is False
        sftp.exit.assert_called_once()
        conn.close.assert_called_once()


class TestFormatPermissions:
    """Tests for format_permissions."""

    def test_modes(self):
        assert format_permissions(0o755) == "rwxr-xr-x"
        assert format_permissions(0o600) == "rw-------"
