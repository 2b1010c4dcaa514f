"""Native-Tool Mode backend: drives the system ssh and scp executables."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import posixpath
import shlex
import shutil
import signal
import subprocess
import sys
from pathlib import Path

from flick.backend import (
    CancelToken,
    FileTransfer,
    ProgressSink,
    ProgressThrottle,
    check_local_destination,
    local_source_size,
)
from flick.errors import (
    AttemptFailure,
    AuthAttemptError,
    ListError,
    ListErrorKind,
    ListWarning,
    TransferCancelled,
    TransferError,
    TransferErrorKind,
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
from flick.parsing import (
    ScpProgressParser,
    classify_list_stderr,
    classify_ssh_stderr,
    classify_transfer_stderr,
    parse_ls_line,
    parse_ls_output,
)

if sys.platform != "win32":
    import fcntl
    import pty
    import termios

logger = logging.getLogger(__name__)

# ssh reserves 255 for its own failures (connection, authentication)
SSH_ERROR_STATUS = 255

# sshpass exit statuses
SSHPASS_BAD_PASSWORD = 5
SSHPASS_HOST_KEY_UNKNOWN = 6

# Number of unparsable ls lines kept in a ListWarning
WARNING_SAMPLES = 5


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); scp only draws its meter on a foreground tty
    with contextlib.suppress(OSError):
        fcntl.ioctl(1, termios.TIOCSCTTY, 0)


def _open_pty() -> tuple[int | None, int | None]:
    if sys.platform == "win32":
        return None, None
    try:
        return pty.openpty()
    except OSError as e:
        logger.debug("No pseudo-terminal available, progress will be indeterminate: %s", e)
        return None, None


def _kill_process(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        if sys.platform == "win32":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)


class NativeToolBackend(FileTransfer):
    """Backend bound to one authentication method that worked with the ssh binary.

    There is no persistent session: every operation spawns ``ssh`` or ``scp``
    with the same options that passed the connection check.
    """

    mode = TransportMode.NATIVE_TOOL
    supports_concurrent_channels = False

    def __init__(
        self,
        profile: ServerProfile,
        settings: EngineSettings | None = None,
        method: AuthMethod | None = None,
    ):
        super().__init__(profile, settings)
        self.method = method or AuthMethod.default_keys(())
        self._closed = False

    @property
    def connected(self) -> bool:
        return not self._closed

    @classmethod
    async def open(
        cls,
        profile: ServerProfile,
        method: AuthMethod,
        settings: EngineSettings | None = None,
    ) -> NativeToolBackend:
        """Check that ``ssh`` can log in with this method before binding to it."""
        settings = settings or EngineSettings()
        if shutil.which(settings.ssh_command) is None:
            raise AuthAttemptError(
                AttemptFailure.TRANSPORT, f"{settings.ssh_command} executable not found"
            )

        backend = cls(profile, settings, method)
        backend.check_usable()

        logger.debug("Checking %s with ssh (%s)", profile.host_key, method.describe())
        try:
            returncode, _, stderr = await backend._exec(
                backend.ssh_command("exit 0"), timeout=settings.auth_timeout
            )
        except asyncio.TimeoutError as e:
            raise AuthAttemptError(
                AttemptFailure.TIMEOUT, "Timed out during authentication"
            ) from e
        except OSError as e:
            raise AuthAttemptError(AttemptFailure.TRANSPORT, f"Failed to run ssh: {e}") from e

        if returncode != 0:
            message = stderr.strip().splitlines()[-1] if stderr.strip() else ""
            if backend._uses_sshpass() and returncode == SSHPASS_BAD_PASSWORD:
                raise AuthAttemptError(
                    AttemptFailure.AUTH_REJECTED, message or "Password rejected"
                )
            if backend._uses_sshpass() and returncode == SSHPASS_HOST_KEY_UNKNOWN:
                raise AuthAttemptError(AttemptFailure.TRANSPORT, message or "Host key unknown")
            failure = classify_ssh_stderr(stderr)
            raise AuthAttemptError(failure, message or f"ssh exited with status {returncode}")

        logger.info("Connected to %s via %s", profile.host_key, settings.ssh_command)
        return backend

    def check_usable(self) -> None:
        """Raise UNAVAILABLE when the method cannot be tried with the local tools."""
        kind = self.method.kind
        if kind == AuthKind.EXPLICIT_KEY and not Path(self.method.key_paths[0]).is_file():
            raise AuthAttemptError(
                AttemptFailure.UNAVAILABLE, f"Key file not found: {self.method.key_paths[0]}"
            )
        if kind == AuthKind.PASSWORD and shutil.which(self.settings.sshpass_command) is None:
            raise AuthAttemptError(
                AttemptFailure.UNAVAILABLE,
                f"{self.settings.sshpass_command} not installed, password login needs it",
            )

    def _secret(self) -> str | None:
        if self.method.kind == AuthKind.PASSWORD:
            return self.profile.password
        if self.method.kind in (AuthKind.EXPLICIT_KEY, AuthKind.DEFAULT_KEY_PROBE):
            return self.profile.passphrase
        return None

    def _uses_sshpass(self) -> bool:
        if not self._secret():
            return False
        if self.method.kind == AuthKind.PASSWORD:
            return True
        return shutil.which(self.settings.sshpass_command) is not None

    def _prefix(self) -> list[str]:
        if not self._uses_sshpass():
            return []
        prefix = [self.settings.sshpass_command, "-e"]
        if self.method.kind != AuthKind.PASSWORD:
            prefix += ["-P", "passphrase"]
        return prefix

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._uses_sshpass():
            env["SSHPASS"] = self._secret() or ""
        if self.method.kind == AuthKind.AGENT:
            env["SSH_AUTH_SOCK"] = self.method.agent_path or ""
        else:
            env.pop("SSH_AUTH_SOCK", None)
        return env

    def ssh_options(self) -> list[str]:
        """-o options shared by ssh and scp for the bound method."""
        opts = [
            "-o", f"ConnectTimeout={max(1, int(self.settings.auth_timeout))}",
            "-o", "ServerAliveInterval=15",
            "-o", "LogLevel=ERROR",
        ]
        if self.settings.verify_host_keys:
            opts += ["-o", "StrictHostKeyChecking=accept-new"]
        else:
            opts += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]

        interactive = self._uses_sshpass()
        opts += ["-o", "BatchMode=no" if interactive else "BatchMode=yes"]

        kind = self.method.kind
        if kind == AuthKind.PASSWORD:
            opts += [
                "-o", "PreferredAuthentications=password,keyboard-interactive",
                "-o", "PubkeyAuthentication=no",
                "-o", "NumberOfPasswordPrompts=1",
            ]
        else:
            opts += ["-o", "PreferredAuthentications=publickey"]
            for key_path in self.method.key_paths:
                opts += ["-i", key_path]
            if self.method.key_paths:
                opts += ["-o", "IdentitiesOnly=yes"]
        return opts

    def _popen_kwargs(self) -> dict:
        if sys.platform == "win32":
            return {"creationflags": subprocess.CREATE_NO_WINDOW}
        return {}

    def ssh_command(self, remote_command: str) -> list[str]:
        return [
            *self._prefix(),
            self.settings.ssh_command,
            "-T",
            "-p", str(self.profile.port),
            *self.ssh_options(),
            self.profile.target,
            remote_command,
        ]

    def scp_target(self, remote_path: str) -> str:
        host = self.profile.host
        if ":" in host:
            host = f"[{host}]"
        if self.profile.username:
            host = f"{self.profile.username}@{host}"
        return f"{host}:{remote_path}"

    def scp_command(self, source: str, destination: str) -> list[str]:
        return [
            *self._prefix(),
            self.settings.scp_command,
            "-P", str(self.profile.port),
            *self.ssh_options(),
            source,
            destination,
        ]

    async def _exec(self, argv: list[str], timeout: float | None = None) -> tuple[int, str, str]:
        """Run a command to completion, returning (status, stdout, stderr)."""
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
            **self._popen_kwargs(),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except BaseException:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _remote(self, command: str) -> str:
        """Run a remote command, raising TransferError on failure."""
        try:
            returncode, stdout, stderr = await self._exec(self.ssh_command(command))
        except OSError as e:
            raise TransferError(TransferErrorKind.IO_ERROR, f"Failed to run ssh: {e}") from e
        if returncode == SSH_ERROR_STATUS:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, stderr.strip() or "ssh failed")
        if returncode != 0:
            raise TransferError(
                classify_transfer_stderr(stderr),
                stderr.strip() or f"Remote command exited with status {returncode}",
            )
        return stdout

    async def run(self, command: str) -> str:
        return await self._remote(command)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.info("Disconnected from %s", self.profile.host_key)

    async def list_dir(self, path: str) -> ListResult:
        path = self.remote_path(path)
        q = shlex.quote(path)
        command = (
            f"cd -- {q} && "
            "{ LC_ALL=C ls -la --time-style=long-iso . 2>/dev/null || LC_ALL=C ls -la . ; }"
        )
        logger.debug("Listing directory: %s", path)
        try:
            returncode, stdout, stderr = await self._exec(
                self.ssh_command(command), timeout=self.settings.list_timeout
            )
        except asyncio.TimeoutError as e:
            raise ListError(ListErrorKind.TIMEOUT, f"Listing {path} timed out") from e
        except OSError as e:
            raise ListError(ListErrorKind.REMOTE_ERROR, f"Failed to run ssh: {e}") from e

        if returncode == SSH_ERROR_STATUS:
            raise ListError(ListErrorKind.CONNECTION_LOST, stderr.strip() or "ssh failed")
        if returncode != 0:
            raise ListError(
                classify_list_stderr(stderr), stderr.strip() or f"Failed to list {path}"
            )

        parsed = parse_ls_output(stdout, path)
        warning = None
        if parsed.bad_lines:
            warning = ListWarning(
                good_entries=len(parsed.entries),
                bad_line_count=len(parsed.bad_lines),
                samples=tuple(parsed.bad_lines[:WARNING_SAMPLES]),
            )
        return ListResult(parsed.entries, warning)

    async def stat(self, path: str) -> RemoteEntry | None:
        path = self.remote_path(path)
        q = shlex.quote(path)
        command = (
            f"LC_ALL=C ls -ldL --time-style=long-iso -- {q} 2>/dev/null"
            f" || LC_ALL=C ls -ldL -- {q}"
        )
        try:
            returncode, stdout, stderr = await self._exec(self.ssh_command(command))
        except OSError as e:
            raise TransferError(TransferErrorKind.IO_ERROR, f"Failed to run ssh: {e}") from e
        if returncode == SSH_ERROR_STATUS:
            raise TransferError(TransferErrorKind.CONNECTION_LOST, stderr.strip() or "ssh failed")
        if returncode != 0:
            if "no such file" in stderr.lower():
                return None
            raise TransferError(classify_transfer_stderr(stderr), stderr.strip())

        lines = [line for line in stdout.splitlines() if line.strip()]
        entry = parse_ls_line(lines[0], posixpath.dirname(path)) if lines else None
        if entry is None:
            raise TransferError(TransferErrorKind.IO_ERROR, f"Unrecognised ls output for {path}")
        entry.path = path
        entry.name = posixpath.basename(path) or path
        return entry

    async def mkdir(self, path: str) -> None:
        path = self.remote_path(path)
        await self._remote(f"mkdir -p -- {shlex.quote(path)}")

    async def remove(self, path: str, recursive: bool = False) -> None:
        q = shlex.quote(self.remote_path(path))
        if recursive:
            await self._remote(f"rm -rf -- {q}")
        else:
            await self._remote(f"if [ -d {q} ]; then rmdir -- {q}; else rm -- {q}; fi")

    async def rename(self, old_path: str, new_path: str) -> None:
        old_q = shlex.quote(self.remote_path(old_path))
        new_q = shlex.quote(self.remote_path(new_path))
        await self._remote(f"mv -f -- {old_q} {new_q}")

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        progress: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> None:
        source = Path(local_path).expanduser()
        remote_path = self.remote_path(remote_path)
        total = local_source_size(source)
        throttle = self.throttle(progress, total, token)
        throttle.start()

        await self.check_remote_destination(remote_path)
        parent = posixpath.dirname(remote_path)
        if parent and parent != "/":
            await self.mkdir(parent)

        argv = self.scp_command(str(source), self.scp_target(remote_path))
        await self._run_transfer(argv, total, throttle, token)
        throttle.finish(total)
        logger.debug("Uploaded %s -> %s (%d bytes)", source, remote_path, total)

    async def download(
        self,
        remote_path: str,
        local_path: str,
        progress: ProgressSink | None = None,
        token: CancelToken | None = None,
    ) -> None:
        remote_path = self.remote_path(remote_path)
        destination = Path(local_path).expanduser()

        entry = await self.stat(remote_path)
        if entry is None:
            raise TransferError(
                TransferErrorKind.SOURCE_NOT_FOUND, f"Remote file not found: {remote_path}"
            )
        if entry.is_dir:
            raise TransferError(
                TransferErrorKind.SOURCE_NOT_FOUND, f"Remote path is a directory: {remote_path}"
            )

        check_local_destination(destination)
        throttle = self.throttle(progress, entry.size, token)
        throttle.start()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TransferError(TransferErrorKind.IO_ERROR, f"Local file error: {e}") from e

        argv = self.scp_command(self.scp_target(remote_path), str(destination))
        await self._run_transfer(argv, entry.size, throttle, token)
        throttle.finish(destination.stat().st_size)
        logger.debug("Downloaded %s -> %s", remote_path, destination)

    async def _run_transfer(
        self,
        argv: list[str],
        total: int | None,
        throttle: ProgressThrottle,
        token: CancelToken | None,
    ) -> None:
        """Run scp, feeding its progress meter to the throttle.

        scp runs in its own process group so cancellation can kill it along
        with the ssh it spawns.
        """
        parser = ScpProgressParser(total)
        master, slave = _open_pty()
        kwargs = self._popen_kwargs()
        if sys.platform != "win32":
            kwargs["start_new_session"] = True
            if slave is not None:
                kwargs["preexec_fn"] = _acquire_controlling_tty

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=slave if slave is not None else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
                **kwargs,
            )
        except OSError as e:
            if master is not None:
                os.close(master)
            raise TransferError(
                TransferErrorKind.IO_ERROR, f"Failed to run {self.settings.scp_command}: {e}"
            ) from e
        finally:
            if slave is not None:
                os.close(slave)

        stderr_task = asyncio.ensure_future(proc.stderr.read())
        watcher = asyncio.ensure_future(self._kill_on_cancel(proc, token)) if token else None
        try:
            if master is not None:
                await self._pump_progress(master, parser, throttle)
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            returncode = await proc.wait()
        except BaseException:
            _kill_process(proc)
            stderr_task.cancel()
            raise
        finally:
            if watcher:
                watcher.cancel()

        if token and token.cancelled:
            raise TransferCancelled()
        if returncode != 0:
            message = stderr.strip() or f"scp exited with status {returncode}"
            kind = classify_transfer_stderr(stderr)
            if kind == TransferErrorKind.IO_ERROR and returncode == SSH_ERROR_STATUS:
                kind = TransferErrorKind.CONNECTION_LOST
            raise TransferError(kind, message)
        if parser.indeterminate:
            logger.debug("scp progress was not recognised, reported completion only")

    async def _pump_progress(
        self, master: int, parser: ScpProgressParser, throttle: ProgressThrottle
    ) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), os.fdopen(master, "rb", 0)
        )
        try:
            while True:
                try:
                    data = await reader.read(4096)
                except OSError:
                    # EIO once the child side of the pty is closed
                    break
                if not data:
                    break
                for value in parser.feed(data):
                    throttle.update(value)
            for value in parser.flush():
                throttle.update(value)
        finally:
            transport.close()

    async def _kill_on_cancel(
        self, proc: asyncio.subprocess.Process, token: CancelToken
    ) -> None:
        await token.wait()
        if proc.returncode is None:
            logger.debug("Transfer cancelled, killing pid %d", proc.pid)
            _kill_process(proc)
