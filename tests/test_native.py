"""Tests for the ssh/scp command-line backend."""

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

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
from flick.models import AuthKind, AuthMethod, EngineSettings, RemoteEntry, ServerProfile
from flick.native import NativeToolBackend

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh and a pty")

LISTING = """\
total 12
drwxr-xr-x 3 u u 4096 2024-01-15 10:30 .
drwxr-xr-x 5 u u 4096 2024-01-15 10:30 ..
-rw-r--r-- 1 u u 2048 2024-01-15 10:29 report.pdf
drwxr-xr-x 2 u u 4096 2024-01-14 09:00 photos
?????????? ? ? ? ?                ? broken
"""


def _which_all(name):
    return f"/usr/bin/{name}"


def _backend(method=None, password=None, passphrase=None, host="example.com", **settings):
    profile = ServerProfile(
        host=host, username="user", port=2222, password=password, passphrase=passphrase
    )
    defaults = {"auth_timeout": 5.0, "progress_byte_threshold": 1}
    defaults.update(settings)
    return NativeToolBackend(profile, EngineSettings(**defaults), method or AuthMethod.agent("/a"))


class TestCommandLines:
    """Tests for ssh and scp argument construction."""

    def test_key_method(self):
        backend = _backend(AuthMethod.explicit_key("/keys/work"))
        argv = backend.ssh_command("exit 0")

        assert argv[0] == "ssh"
        assert argv[-2:] == ["user@example.com", "exit 0"]
        assert argv[argv.index("-p") + 1] == "2222"
        assert argv[argv.index("-i") + 1] == "/keys/work"
        assert "IdentitiesOnly=yes" in argv
        assert "BatchMode=yes" in argv
        assert "PreferredAuthentications=publickey" in argv

    def test_default_keys_pass_every_key(self):
        backend = _backend(AuthMethod.default_keys(["/k/id_ed25519", "/k/id_rsa"]))
        argv = backend.ssh_command("true")
        assert [argv[i + 1] for i, arg in enumerate(argv) if arg == "-i"] == [
            "/k/id_ed25519",
            "/k/id_rsa",
        ]

    def test_password_goes_through_sshpass(self):
        backend = _backend(AuthMethod.password(), password="s3cret")
        argv = backend.ssh_command("exit 0")

        assert argv[:3] == ["sshpass", "-e", "ssh"]
        assert "BatchMode=no" in argv
        assert "PubkeyAuthentication=no" in argv
        assert "s3cret" not in argv
        assert backend._env()["SSHPASS"] == "s3cret"

    def test_passphrase_prompt_matched(self):
        backend = _backend(AuthMethod.explicit_key("/k/work"), passphrase="pp")
        with patch("flick.native.shutil.which", side_effect=_which_all):
            argv = backend.ssh_command("exit 0")
        assert argv[:4] == ["sshpass", "-e", "-P", "passphrase"]

    def test_agent_socket_in_environment(self):
        backend = _backend(AuthMethod.agent("/tmp/agent.sock"))
        assert backend._env()["SSH_AUTH_SOCK"] == "/tmp/agent.sock"

    def test_non_agent_methods_hide_agent(self):
        backend = _backend(AuthMethod.explicit_key("/k/work"))
        with patch.dict(os.environ, {"SSH_AUTH_SOCK": "/tmp/agent.sock"}):
            assert "SSH_AUTH_SOCK" not in backend._env()

    def test_host_key_checking(self):
        strict = _backend().ssh_options()
        assert "StrictHostKeyChecking=accept-new" in strict

        relaxed = _backend(verify_host_keys=False).ssh_options()
        assert "StrictHostKeyChecking=no" in relaxed
        assert "UserKnownHostsFile=/dev/null" in relaxed

    def test_scp_uses_capital_port_flag(self):
        argv = _backend().scp_command("/tmp/a", "user@example.com:/srv/a")
        assert argv[0] == "scp"
        assert argv[argv.index("-P") + 1] == "2222"
        assert argv[-2:] == ["/tmp/a", "user@example.com:/srv/a"]

    def test_scp_target_brackets_ipv6(self):
        assert _backend(host="fe80::1").scp_target("/srv/a") == "user@[fe80::1]:/srv/a"
        assert _backend().scp_target("/srv/a") == "user@example.com:/srv/a"


class TestNativeOpen:
    """Tests for the ssh connection check."""

    def setup_method(self):
        self.profile = ServerProfile(host="example.com", username="user", password="pw")
        self.settings = EngineSettings(auth_timeout=1.0)

    async def _open(self, method, exec_result=None, exec_error=None, which=_which_all):
        mock_exec = AsyncMock(return_value=exec_result, side_effect=exec_error)
        with patch("flick.native.shutil.which", side_effect=which):
            with patch.object(NativeToolBackend, "_exec", mock_exec):
                backend = await NativeToolBackend.open(self.profile, method, self.settings)
        return backend, mock_exec

    @pytest.mark.asyncio
    async def test_success(self):
        backend, mock_exec = await self._open(AuthMethod.agent("/a"), (0, "", ""))
        assert backend.connected is True
        assert backend.method.kind == AuthKind.AGENT
        assert mock_exec.call_args.args[0][-1] == "exit 0"
        assert mock_exec.call_args.kwargs["timeout"] == 1.0

    @pytest.mark.asyncio
    async def test_missing_ssh_is_transport(self):
        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.agent("/a"), which=lambda name: None)
        assert exc_info.value.failure == AttemptFailure.TRANSPORT

    @pytest.mark.asyncio
    async def test_password_without_sshpass_unavailable(self):
        def which(name):
            return None if name == "sshpass" else f"/usr/bin/{name}"

        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.password(), which=which)
        assert exc_info.value.failure == AttemptFailure.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_missing_key_unavailable(self):
        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.explicit_key("/nonexistent/key"), (0, "", ""))
        assert exc_info.value.failure == AttemptFailure.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        result = (255, "", "user@example.com: Permission denied (publickey).\n")
        with pytest.raises(AuthAttemptError, match="Permission denied") as exc_info:
            await self._open(AuthMethod.agent("/a"), result)
        assert exc_info.value.failure == AttemptFailure.AUTH_REJECTED

    @pytest.mark.asyncio
    async def test_sshpass_bad_password(self):
        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.password(), (5, "", ""))
        assert exc_info.value.failure == AttemptFailure.AUTH_REJECTED

    @pytest.mark.asyncio
    async def test_sshpass_unknown_host_key(self):
        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.password(), (6, "", ""))
        assert exc_info.value.failure == AttemptFailure.TRANSPORT

    @pytest.mark.asyncio
    async def test_unreachable_host(self):
        result = (255, "", "ssh: connect to host example.com port 22: No route to host\n")
        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.agent("/a"), result)
        assert exc_info.value.failure == AttemptFailure.NETWORK

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(AuthAttemptError) as exc_info:
            await self._open(AuthMethod.agent("/a"), exec_error=asyncio.TimeoutError())
        assert exc_info.value.failure == AttemptFailure.TIMEOUT


class TestNativeListing:
    """Tests for listing through ssh and ls."""

    @pytest.mark.asyncio
    async def test_partial_parse_produces_warning(self):
        backend = _backend()
        with patch.object(backend, "_exec", AsyncMock(return_value=(0, LISTING, ""))):
            result = await backend.list_dir("/home/user")

        assert sorted(e.name for e in result.entries) == ["photos", "report.pdf"]
        assert result.warning is not None
        assert result.warning.good_entries == 2
        assert result.warning.bad_line_count == 1
        assert "broken" in result.warning.samples[0]

    @pytest.mark.asyncio
    async def test_listing_command_quotes_path(self):
        backend = _backend()
        mock_exec = AsyncMock(return_value=(0, "total 0\n", ""))
        with patch.object(backend, "_exec", mock_exec):
            await backend.list_dir("/srv/my files")

        remote_command = mock_exec.call_args.args[0][-1]
        assert remote_command.startswith("cd -- '/srv/my files' && ")
        assert "--time-style=long-iso" in remote_command

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        backend = _backend()
        result = (1, "", "bash: line 1: cd: /root: Permission denied\n")
        with patch.object(backend, "_exec", AsyncMock(return_value=result)):
            with pytest.raises(ListError) as exc_info:
                await backend.list_dir("/root")
        assert exc_info.value.kind == ListErrorKind.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        backend = _backend()
        result = (255, "", "Connection closed by 10.0.0.1 port 22\n")
        with patch.object(backend, "_exec", AsyncMock(return_value=result)):
            with pytest.raises(ListError) as exc_info:
                await backend.list_dir("/")
        assert exc_info.value.kind == ListErrorKind.CONNECTION_LOST

    @pytest.mark.asyncio
    async def test_timeout(self):
        backend = _backend()
        with patch.object(backend, "_exec", AsyncMock(side_effect=asyncio.TimeoutError())):
            with pytest.raises(ListError) as exc_info:
                await backend.list_dir("/")
        assert exc_info.value.kind == ListErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_stat(self):
        backend = _backend()
        line = "-rw-r--r-- 1 u u 2048 2024-01-15 10:29 /srv/report.pdf\n"
        with patch.object(backend, "_exec", AsyncMock(return_value=(0, line, ""))):
            entry = await backend.stat("/srv/report.pdf")

        assert entry.name == "report.pdf"
        assert entry.path == "/srv/report.pdf"
        assert entry.size == 2048

    @pytest.mark.asyncio
    async def test_stat_reports_link_target(self):
        """A symlink is described by the file it points to."""
        backend = _backend()
        line = "-rw-r--r-- 1 u u 10485760 2024-01-15 10:29 /srv/latest.iso\n"
        mock_exec = AsyncMock(return_value=(0, line, ""))
        with patch.object(backend, "_exec", mock_exec):
            entry = await backend.stat("/srv/latest.iso")

        assert "ls -ldL " in mock_exec.call_args.args[0][-1]
        assert entry.size == 10485760
        assert entry.is_link is False

    @pytest.mark.asyncio
    async def test_stat_missing(self):
        backend = _backend()
        result = (2, "", "ls: cannot access '/srv/x': No such file or directory\n")
        with patch.object(backend, "_exec", AsyncMock(return_value=result)):
            assert await backend.stat("/srv/x") is None

    @pytest.mark.asyncio
    async def test_download_missing_source(self):
        backend = _backend()
        with patch.object(backend, "stat", AsyncMock(return_value=None)):
            with pytest.raises(TransferError) as exc_info:
                await backend.download("/srv/x", "/tmp/x")
        assert exc_info.value.kind == TransferErrorKind.SOURCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_download_directory_rejected(self):
        backend = _backend()
        directory = RemoteEntry("srv", "/srv", True)
        with patch.object(backend, "stat", AsyncMock(return_value=directory)):
            with pytest.raises(TransferError) as exc_info:
                await backend.download("/srv", "/tmp/x")
        assert exc_info.value.kind == TransferErrorKind.SOURCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_remote_command_failure_classified(self):
        backend = _backend()
        result = (1, "", "mkdir: cannot create directory '/x': File exists\n")
        with patch.object(backend, "_exec", AsyncMock(return_value=result)):
            with pytest.raises(TransferError) as exc_info:
                await backend.mkdir("/x")
        assert exc_info.value.kind == TransferErrorKind.DESTINATION_CONFLICT


@posix_only
class TestNativeSubprocess:
    """Tests that run real local processes in place of ssh and scp."""

    @pytest.mark.asyncio
    async def test_exec_collects_output(self):
        backend = _backend()
        returncode, stdout, stderr = await backend._exec(
            ["/bin/sh", "-c", "echo out; echo err >&2; exit 3"], timeout=5
        )
        assert returncode == 3
        assert stdout == "out\n"
        assert stderr == "err\n"

    @pytest.mark.asyncio
    async def test_exec_timeout_kills_process(self):
        backend = _backend()
        with pytest.raises(asyncio.TimeoutError):
            await backend._exec(["/bin/sh", "-c", "sleep 10"], timeout=0.1)

    @pytest.mark.asyncio
    async def test_transfer_progress_read_from_tty(self):
        backend = _backend()
        reports = []
        throttle = backend.throttle(lambda done, total: reports.append(done), 10240, None)
        throttle.start()
        script = "printf 'f  50%%    5KB   1.0MB/s   00:00 ETA\\r'; exit 0"

        await backend._run_transfer(["/bin/sh", "-c", script], 10240, throttle, None)

        assert reports[0] == 0
        assert 5120 in reports

    @pytest.mark.asyncio
    async def test_transfer_failure_classified(self):
        backend = _backend()
        throttle = backend.throttle(None, 10, None)
        script = "echo 'scp: /srv/x: No space left on device' >&2; exit 1"

        with pytest.raises(TransferError) as exc_info:
            await backend._run_transfer(["/bin/sh", "-c", script], 10, throttle, None)
        assert exc_info.value.kind == TransferErrorKind.DISK_FULL

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self):
        backend = _backend()
        token = CancelToken()
        throttle = backend.throttle(None, 10, token)
        asyncio.get_running_loop().call_later(0.1, token.cancel)

        with pytest.raises(TransferCancelled):
            await asyncio.wait_for(
                backend._run_transfer(["/bin/sh", "-c", "sleep 30"], 10, throttle, token), 5
            )

    @pytest.mark.asyncio
    async def test_upload_runs_scp_with_remote_target(self):
        """Upload checks the destination, then hands scp a user@host:path target."""
        backend = _backend(AuthMethod.explicit_key("/k/work"))
        mock_run = AsyncMock()
        parent = RemoteEntry("srv", "/srv", True)

        with tempfile.TemporaryDirectory() as tmpdir:
            source = Path(tmpdir) / "a.bin"
            source.write_bytes(b"x" * 100)
            with patch.object(backend, "stat", AsyncMock(side_effect=[None, parent])):
                with patch.object(backend, "_remote", AsyncMock(return_value="")):
                    with patch.object(backend, "_run_transfer", mock_run):
                        await backend.upload(str(source), "/srv/a.bin")

        argv = mock_run.call_args.args[0]
        assert argv[-2:] == [str(source), "user@example.com:/srv/a.bin"]
        assert mock_run.call_args.args[1] == 100
