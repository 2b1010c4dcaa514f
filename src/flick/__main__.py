"""Command line entry point for Flick."""

import asyncio
import dataclasses
import logging
import posixpath
import sys
from pathlib import Path

import click

from flick import __version__
from flick.config import ProfileStore, SettingsManager
from flick.engine import Engine
from flick.errors import ConnectError, FlickError
from flick.models import ServerProfile, TransferDirection, TransferStatus


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity level."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    else:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")


def resolve_profile(
    target: str,
    port: int,
    identity: str | None,
    password: bool,
    store: ProfileStore | None = None,
) -> ServerProfile:
    """Build a profile from a saved server name or a user@host string."""
    profile = None
    if "@" not in target:
        profile = (store or ProfileStore()).get(target)
    if profile is None:
        key_path = str(Path(identity).expanduser()) if identity else None
        profile = ServerProfile.from_string(target, port=port, key_path=key_path)
    elif identity:
        profile = dataclasses.replace(profile, key_path=str(Path(identity).expanduser()))

    # If no username, prompt for it
    if not profile.username:
        profile = dataclasses.replace(profile, username=click.prompt("Username"))
    if password:
        profile = dataclasses.replace(profile, password=click.prompt("Password", hide_input=True))
    return profile


def _format_size(size: int | None) -> str:
    if size is None:
        return "?"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


async def _transfer(
    engine: Engine, profile: ServerProfile, direction: TransferDirection, local: str, remote: str
) -> bool:
    connection = await engine.connect(profile)
    task_id = engine.enqueue_transfer(connection, direction, local, remote)
    async for event in engine.subscribe_progress(task_id):
        if event.bytes_total:
            pct = event.bytes_done * 100 // event.bytes_total
            done = _format_size(event.bytes_done)
            total = _format_size(event.bytes_total)
            click.echo(f"\r{pct:3d}% {done} / {total}", nl=False)
        if event.is_terminal:
            click.echo("")
            if event.status != TransferStatus.SUCCEEDED:
                click.echo(f"{event.status.value}: {event.error}", err=True)
            return event.status == TransferStatus.SUCCEEDED
    return False


def _run(ctx: click.Context, coro_factory) -> None:
    """Run an engine coroutine, turning engine errors into exit codes."""

    async def runner():
        async with Engine(ctx.obj["settings"]) as engine:
            return await coro_factory(engine)

    try:
        ok = asyncio.run(runner())
    except ConnectError as e:
        click.echo(f"Connection failed: {e.summary()}", err=True)
        sys.exit(2)
    except FlickError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if ok is False:
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("-p", "--port", default=22, help="SSH port (default: 22)")
@click.option("-i", "--identity", help="Path to SSH private key")
@click.option("-P", "--password", is_flag=True, help="Prompt for password authentication")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug output")
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def main(
    ctx: click.Context,
    port: int,
    identity: str | None,
    password: bool,
    verbose: bool,
    version: bool,
) -> None:
    """Flick - copy files over SSH with SFTP, falling back to ssh/scp.

    TARGET is user@hostname[:port] or the name of a saved server.

    Examples:

        flick ls user@server.example.com /var/log

        flick get user@host -p 2222 -i ~/.ssh/server_key /etc/motd

        flick -P put user@host report.pdf uploads/report.pdf
    """
    if version:
        click.echo(f"flick {__version__}")
        sys.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        sys.exit(0)

    setup_logging(verbose)
    ctx.obj = {
        "port": port,
        "identity": identity,
        "password": password,
        "settings": SettingsManager().settings,
    }


def _profile(ctx: click.Context, target: str) -> ServerProfile:
    opts = ctx.obj
    return resolve_profile(target, opts["port"], opts["identity"], opts["password"])


@main.command("check")
@click.argument("target")
@click.pass_context
def check_command(ctx: click.Context, target: str) -> None:
    """Connect and print every authentication attempt."""
    profile = _profile(ctx, target)

    async def check(engine: Engine) -> bool:
        try:
            connection = await engine.connect(profile)
        except ConnectError as e:
            for attempt in e.attempts:
                click.echo(str(attempt))
            raise
        for attempt in connection.attempts:
            click.echo(str(attempt))
        click.echo(f"Connected to {profile.host_key} using {connection.mode.value} mode")
        return True

    _run(ctx, check)


@main.command("ls")
@click.argument("target")
@click.argument("path", default=".")
@click.pass_context
def ls_command(ctx: click.Context, target: str, path: str) -> None:
    """List a remote directory."""
    profile = _profile(ctx, target)

    async def listing(engine: Engine) -> bool:
        connection = await engine.connect(profile)
        result = await engine.list(connection, path)
        for entry in result:
            mtime = entry.mtime.strftime("%Y-%m-%d %H:%M") if entry.mtime else "-"
            name = f"{entry.name}/" if entry.is_dir else entry.name
            click.echo(f"{entry.permissions or '?':10} {entry.size_human:>10}  {mtime}  {name}")
        if result.warning:
            click.echo(f"warning: {result.warning}", err=True)
        return True

    _run(ctx, listing)


@main.command("get")
@click.argument("target")
@click.argument("remote")
@click.argument("local", required=False)
@click.pass_context
def get_command(ctx: click.Context, target: str, remote: str, local: str | None) -> None:
    """Download REMOTE to LOCAL (default: current directory)."""
    profile = _profile(ctx, target)
    local = local or posixpath.basename(remote.rstrip("/"))
    if Path(local).is_dir():
        local = str(Path(local) / posixpath.basename(remote.rstrip("/")))

    _run(ctx, lambda engine: _transfer(engine, profile, TransferDirection.DOWNLOAD, local, remote))


@main.command("put")
@click.argument("target")
@click.argument("local", type=click.Path(exists=True, dir_okay=False))
@click.argument("remote", required=False)
@click.pass_context
def put_command(ctx: click.Context, target: str, local: str, remote: str | None) -> None:
    """Upload LOCAL to REMOTE (default: same name in the base directory)."""
    profile = _profile(ctx, target)
    remote = remote or Path(local).name

    _run(ctx, lambda engine: _transfer(engine, profile, TransferDirection.UPLOAD, local, remote))


if __name__ == "__main__":
    main()
