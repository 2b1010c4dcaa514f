"""Credential chain resolution."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

from flick.models import AuthMethod, ServerProfile

logger = logging.getLogger(__name__)

# Fixed probe order for keys under ~/.ssh
DEFAULT_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa", "id_dsa")

# Files in ~/.ssh that are never private keys
_NOT_KEYS = ("config", "environment", "authorized_keys", "authorized_keys2")


def default_ssh_dir() -> Path:
    return Path.home() / ".ssh"


def _is_readable_file(path: Path) -> bool:
    try:
        return path.is_file() and os.access(path, os.R_OK)
    except OSError:
        return False


def find_agent(agent_path: str | None = None) -> str | None:
    """Return the ssh-agent socket path if one is reachable."""
    sock = agent_path if agent_path is not None else os.environ.get("SSH_AUTH_SOCK")
    if not sock:
        return None
    if os.name == "nt":
        # Windows agents are named pipes; nothing to probe on the filesystem
        return sock
    try:
        if stat.S_ISSOCK(os.stat(sock).st_mode):
            return sock
    except OSError:
        pass
    logger.debug("SSH_AUTH_SOCK %s is not a reachable socket", sock)
    return None


def discover_key_files(ssh_dir: Path) -> list[str]:
    """List other private-key-looking files in the SSH directory, sorted."""
    try:
        candidates = sorted(ssh_dir.iterdir())
    except OSError:
        return []
    keys = []
    for path in candidates:
        name = path.name
        if (
            name.endswith(".pub")
            or name.startswith("known_hosts")
            or name in _NOT_KEYS
            or name.startswith(".")
        ):
            continue
        if _is_readable_file(path):
            keys.append(str(path))
    return keys


def default_key_candidates(
    ssh_dir: Path | None = None,
    key_names: tuple[str, ...] = DEFAULT_KEY_NAMES,
    probe_extra: bool = False,
    exclude: tuple[str, ...] = (),
) -> list[str]:
    """Existing, readable default keys in fixed priority order."""
    ssh_dir = ssh_dir or default_ssh_dir()
    excluded = {str(Path(p).expanduser()) for p in exclude}
    found = []
    for name in key_names:
        path = ssh_dir / name
        if _is_readable_file(path) and str(path) not in excluded:
            found.append(str(path))
    if probe_extra:
        for path in discover_key_files(ssh_dir):
            if path not in found and path not in excluded:
                found.append(path)
    return found


def resolve(
    profile: ServerProfile,
    ssh_dir: Path | None = None,
    agent_path: str | None = None,
    key_names: tuple[str, ...] = DEFAULT_KEY_NAMES,
    probe_extra: bool = False,
) -> list[AuthMethod]:
    """Build the ordered authentication chain for a profile.

    Order is password, explicit key, agent, then default keys. The default
    key probe is always present, even when no candidate files exist, so the
    native tools still get a chance to use their own key resolution.
    """
    chain: list[AuthMethod] = []
    if profile.password:
        chain.append(AuthMethod.password())

    explicit = None
    if profile.key_path:
        explicit = str(Path(profile.key_path).expanduser())
        chain.append(AuthMethod.explicit_key(explicit))

    agent = find_agent(agent_path)
    if agent:
        chain.append(AuthMethod.agent(agent))

    exclude = (explicit,) if explicit else ()
    keys = default_key_candidates(ssh_dir, key_names, probe_extra, exclude)
    chain.append(AuthMethod.default_keys(keys))

    logger.debug(
        "Auth chain for %s: %s", profile.host_key, ", ".join(m.describe() for m in chain)
    )
    return chain
