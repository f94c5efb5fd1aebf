"""
Profile registry.

Profiles namespace the history and summary documents by upstream
account. The registry lives in the config file; ``default`` always
exists and uses the top-level credentials.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from glm_monitor.core.exceptions import ProfileError, UnknownProfileError
from glm_monitor.storage.files import DEFAULT_PROFILE, ProfilePaths
from glm_monitor.storage.models import format_timestamp, utc_now
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

from .loader import (
    AUTH_TOKEN_ENV_VAR,
    BASE_URL_ENV_VAR,
    DEFAULT_BASE_URL,
    PROFILE_NAME_PATTERN,
    MonitorConfig,
    ProfileConfig,
    load_monitor_config,
    save_monitor_config,
)

logger = logging.getLogger(__name__)


def _default_base_url(config: MonitorConfig) -> str:
    # An explicitly configured URL wins over the environment
    if config.base_url != DEFAULT_BASE_URL:
        return config.base_url
    return os.environ.get(BASE_URL_ENV_VAR) or DEFAULT_BASE_URL


@dataclass(frozen=True)
class Profile:
    """A named usage-history namespace with its credentials."""
    name: str
    auth_token: Optional[str]
    base_url: str
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ProfileInfo:
    """Public view of a profile, without credentials."""
    name: str
    is_active: bool
    created_at: Optional[str] = None


class ProfileRegistry:
    """Create, switch, list and delete profiles.

    Every operation re-reads the config file and writes it back
    atomically, so the registry holds no state between calls.
    """

    def __init__(self, config_path: Path, clock: Callable[[], datetime] = utc_now):
        self.config_path = Path(config_path)
        self.clock = clock

    def _load(self) -> MonitorConfig:
        return load_monitor_config(self.config_path)

    def _save(self, config: MonitorConfig) -> None:
        save_monitor_config(config, self.config_path)

    @property
    def active(self) -> str:
        return self._load().active_profile

    def exists(self, name: str) -> bool:
        return name == DEFAULT_PROFILE or name in self._load().profiles

    def get(self, name: Optional[str] = None) -> Profile:
        """Get a profile with its credentials; defaults to the active one.

        The default profile falls back to ``ANTHROPIC_AUTH_TOKEN`` and
        ``ANTHROPIC_BASE_URL`` when the config file has no credentials.

        Raises:
            UnknownProfileError: If the profile does not exist
        """
        config = self._load()
        name = name or config.active_profile

        if name == DEFAULT_PROFILE:
            return Profile(
                name=DEFAULT_PROFILE,
                auth_token=config.auth_token or os.environ.get(AUTH_TOKEN_ENV_VAR),
                base_url=_default_base_url(config),
            )

        if name not in config.profiles:
            raise UnknownProfileError(f"Profile '{name}' does not exist")
        entry = config.profiles[name]
        return Profile(
            name=name,
            auth_token=entry.auth_token,
            base_url=entry.base_url or config.base_url,
            created_at=entry.created_at,
        )

    def list(self) -> List[ProfileInfo]:
        """List profiles, ``default`` first."""
        config = self._load()
        infos = [ProfileInfo(DEFAULT_PROFILE, config.active_profile == DEFAULT_PROFILE)]
        for name in sorted(config.profiles):
            infos.append(ProfileInfo(
                name=name,
                is_active=config.active_profile == name,
                created_at=config.profiles[name].created_at,
            ))
        return infos

    def create(self, name: str, auth_token: str, base_url: Optional[str] = None) -> Profile:
        """Create a profile.

        Raises:
            ProfileError: If the name is reserved, invalid or already taken,
                or the token is empty
        """
        if name == DEFAULT_PROFILE:
            raise ProfileError(f"'{DEFAULT_PROFILE}' is a reserved profile name")
        if not PROFILE_NAME_PATTERN.fullmatch(name or ""):
            raise ProfileError(
                f"Invalid profile name '{name}': use letters, digits, '-' and '_' only"
            )
        if not auth_token or not auth_token.strip():
            raise ProfileError("auth_token is required and cannot be empty")

        config = self._load()
        if name in config.profiles:
            raise ProfileError(f"Profile '{name}' already exists")

        profiles = dict(config.profiles)
        profiles[name] = ProfileConfig(
            auth_token=auth_token,
            base_url=base_url,
            created_at=format_timestamp(self.clock()),
        )
        self._save(config.with_changes(profiles=profiles))
        logger.info(f"Created profile '{name}'")
        return self.get(name)

    def switch(self, name: str) -> Profile:
        """Make a profile the active one.

        Raises:
            UnknownProfileError: If the profile does not exist
        """
        config = self._load()
        if name != DEFAULT_PROFILE and name not in config.profiles:
            raise UnknownProfileError(f"Profile '{name}' does not exist")
        self._save(config.with_changes(active_profile=name))
        logger.info(f"Switched to profile '{name}'")
        return self.get(name)

    def delete(self, name: str) -> List[Path]:
        """Delete a profile together with its history and summary documents.

        Nothing is changed when the profile cannot be deleted.

        Returns:
            Paths of the documents that were removed

        Raises:
            ProfileError: If the profile is ``default`` or currently active, or
                its data files cannot be removed
            UnknownProfileError: If the profile does not exist
        """
        config = self._load()
        if name == DEFAULT_PROFILE:
            raise ProfileError(f"The '{DEFAULT_PROFILE}' profile cannot be deleted")
        if name not in config.profiles:
            raise UnknownProfileError(f"Profile '{name}' does not exist")
        if name == config.active_profile:
            raise ProfileError(f"Profile '{name}' is active; switch to another profile first")

        # Data goes first so a failed unlink leaves the profile registered
        paths = ProfilePaths(config.data_dir)
        removed = []
        try:
            if SnapshotStore(paths).delete(name):
                removed.append(paths.history_path(name))
            if SummaryStore(paths).delete(name):
                removed.append(paths.summary_path(name))
        except OSError as exc:
            raise ProfileError(
                f"Could not remove data for profile '{name}': {exc}",
                {"profile": name},
            ) from exc

        profiles = {key: value for key, value in config.profiles.items() if key != name}
        self._save(config.with_changes(profiles=profiles))

        logger.info(f"Deleted profile '{name}' and {len(removed)} data file(s)")
        return removed
