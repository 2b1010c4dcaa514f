"""Configuration: engine settings and the read-only server profile store."""

import json
import logging
from pathlib import Path
from typing import Optional

from flick.models import EngineSettings, ServerProfile

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """Get the config directory path."""
    config_dir = Path.home() / ".config" / "flick"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


class SettingsManager:
    """Manages engine settings."""

    def __init__(self):
        self.config_file = get_config_dir() / "settings.json"
        self._settings = EngineSettings()
        self._load()

    def _load(self) -> None:
        """Load settings from config file."""
        if self.config_file.exists():
            try:
                data = json.loads(self.config_file.read_text())
                self._settings = EngineSettings.from_dict(data)
            except (json.JSONDecodeError, KeyError, TypeError):
                logger.warning("Ignoring unreadable settings file %s", self.config_file)
                self._settings = EngineSettings()

    def _save(self) -> None:
        """Save settings to config file."""
        self.config_file.write_text(json.dumps(self._settings.to_dict(), indent=2))

    @property
    def settings(self) -> EngineSettings:
        """Get current settings."""
        return self._settings

    def update(self, **kwargs) -> None:
        """Update settings."""
        for key, value in kwargs.items():
            if hasattr(self._settings, key):
                setattr(self._settings, key, value)
        self._save()


class ProfileStore:
    """Read-only view of saved server profiles.

    Profiles are owned by whatever application writes ``servers.json``; the
    engine only ever reads them. Each lookup returns an immutable snapshot.
    """

    def __init__(self, path: Optional[Path] = None):
        self.profiles_file = path or get_config_dir() / "servers.json"
        self._profiles: list[ServerProfile] = []
        self._default: Optional[str] = None
        self._load()

    def _load(self) -> None:
        """Load profiles from the servers file."""
        if not self.profiles_file.exists():
            return
        try:
            data = json.loads(self.profiles_file.read_text())
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable profiles file %s", self.profiles_file)
            return
        for item in data.get("servers", []):
            try:
                self._profiles.append(ServerProfile.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid server entry %r: %s", item.get("name"), e)
        self._default = data.get("default")

    def reload(self) -> None:
        """Re-read the profiles file, picking up external edits."""
        self._profiles = []
        self._default = None
        self._load()

    @property
    def profiles(self) -> list[ServerProfile]:
        return list(self._profiles)

    def names(self) -> list[str]:
        return [p.name for p in self._profiles if p.name]

    def get(self, name: str) -> Optional[ServerProfile]:
        """Find a profile by name."""
        for profile in self._profiles:
            if profile.name == name:
                return profile
        return None

    def get_by_key(self, host_key: str) -> Optional[ServerProfile]:
        """Find a profile by its key (user@host:port)."""
        for profile in self._profiles:
            if profile.host_key == host_key:
                return profile
        return None

    @property
    def default(self) -> Optional[ServerProfile]:
        if self._default:
            return self.get(self._default)
        return None
