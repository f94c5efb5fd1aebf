"""
Configuration management and loading.

Handles application settings, profile credentials and environment
variables.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from glm_monitor.core.exceptions import ConfigError, InvalidRangeError
from glm_monitor.core.ranges import RetentionPeriod, parse_retention
from glm_monitor.storage.files import DEFAULT_PROFILE, write_text_atomic

DEFAULT_BASE_URL = "https://api.z.ai/api/anthropic"
DEFAULT_DATA_DIR = Path.home() / ".glm-monitor"
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8081

CONFIG_ENV_VAR = "GLM_MONITOR_CONFIG"
AUTH_TOKEN_ENV_VAR = "ANTHROPIC_AUTH_TOKEN"
BASE_URL_ENV_VAR = "ANTHROPIC_BASE_URL"

# Profile names become part of file names
PROFILE_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class ApiConfig:
    """Local REST API binding."""
    host: str = DEFAULT_API_HOST
    port: int = DEFAULT_API_PORT

    def __post_init__(self):
        """Validate the port range."""
        if not 0 < self.port <= 65535:
            raise ConfigError(f"api.port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class ProfileConfig:
    """Credentials of a named profile."""
    auth_token: str
    base_url: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class MonitorConfig:
    """Complete application configuration."""
    retention: RetentionPeriod = RetentionPeriod.DAY
    base_url: str = DEFAULT_BASE_URL
    auth_token: Optional[str] = None
    data_dir: Path = DEFAULT_DATA_DIR
    active_profile: str = DEFAULT_PROFILE
    api: ApiConfig = field(default_factory=ApiConfig)
    profiles: Dict[str, ProfileConfig] = field(default_factory=dict)

    def with_changes(self, **changes: Any) -> "MonitorConfig":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        profiles = {}
        for name, profile in self.profiles.items():
            entry: Dict[str, Any] = {"auth_token": profile.auth_token}
            if profile.base_url:
                entry["base_url"] = profile.base_url
            if profile.created_at:
                entry["created_at"] = profile.created_at
            profiles[name] = entry

        return {
            "retention": self.retention.value,
            "base_url": self.base_url,
            "auth_token": self.auth_token,
            "data_dir": str(self.data_dir),
            "active_profile": self.active_profile,
            "api": {"host": self.api.host, "port": self.api.port},
            "profiles": profiles,
        }


def default_config_path() -> Path:
    """Config file location, overridable through ``GLM_MONITOR_CONFIG``."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return DEFAULT_DATA_DIR / "config.yaml"


def load_monitor_config(path: Optional[Path] = None) -> MonitorConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys and wrong types are rejected.

    Args:
        path: Path to YAML configuration file; defaults to
            ``default_config_path()``

    Returns:
        Validated MonitorConfig; the defaults if the file does not exist

    Raises:
        ConfigError: If the YAML is invalid or the configuration is invalid
    """
    config_path = Path(path) if path else default_config_path()
    if not config_path.exists():
        return MonitorConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        return MonitorConfig()
    if not isinstance(raw_config, dict):
        raise ConfigError("Configuration must be a mapping")

    allowed_top_keys = {
        "retention", "base_url", "auth_token", "data_dir",
        "active_profile", "api", "profiles",
    }
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    # Retention
    try:
        retention = parse_retention(str(raw_config.get("retention", RetentionPeriod.DAY.value)))
    except InvalidRangeError as e:
        raise ConfigError(str(e))

    base_url = _optional_str(raw_config, "base_url", "base_url") or DEFAULT_BASE_URL
    auth_token = _optional_str(raw_config, "auth_token", "auth_token")

    data_dir_value = _optional_str(raw_config, "data_dir", "data_dir")
    data_dir = Path(data_dir_value).expanduser() if data_dir_value else DEFAULT_DATA_DIR

    # API binding
    api_data = raw_config.get("api") or {}
    if not isinstance(api_data, dict):
        raise ConfigError("'api' must be a dictionary")
    unknown_api_keys = set(api_data.keys()) - {"host", "port"}
    if unknown_api_keys:
        raise ConfigError(f"Unknown api keys: {sorted(unknown_api_keys)}")
    port = api_data.get("port", DEFAULT_API_PORT)
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError("'api.port' must be an integer")
    api = ApiConfig(
        host=_optional_str(api_data, "host", "api.host") or DEFAULT_API_HOST,
        port=port,
    )

    # Profiles
    profiles_data = raw_config.get("profiles") or {}
    if not isinstance(profiles_data, dict):
        raise ConfigError("'profiles' must be a dictionary")

    profiles = {}
    for name, profile_data in profiles_data.items():
        if not isinstance(profile_data, dict):
            raise ConfigError(f"Profile '{name}' must be a dictionary")
        if not PROFILE_NAME_PATTERN.fullmatch(str(name)):
            raise ConfigError(
                f"Invalid profile name '{name}': use letters, digits, '-' and '_' only"
            )
        profiles[str(name)] = _parse_profile_config(profile_data, f"profiles.{name}")

    active_profile = _optional_str(raw_config, "active_profile", "active_profile") or DEFAULT_PROFILE
    if active_profile != DEFAULT_PROFILE and active_profile not in profiles:
        raise ConfigError(f"Active profile '{active_profile}' is not defined under 'profiles'")

    return MonitorConfig(
        retention=retention,
        base_url=base_url,
        auth_token=auth_token,
        data_dir=data_dir,
        active_profile=active_profile,
        api=api,
        profiles=profiles,
    )


def save_monitor_config(config: MonitorConfig, path: Optional[Path] = None) -> Path:
    """Write configuration to a YAML file atomically.

    Returns:
        The path written
    """
    config_path = Path(path) if path else default_config_path()
    write_text_atomic(config_path, yaml.safe_dump(config.to_dict(), sort_keys=False))
    return config_path


def _optional_str(data: Dict, key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"'{path}' must be a string")
    return value


def _parse_profile_config(data: Dict, path: str) -> ProfileConfig:
    """Parse and validate a profile entry.

    Args:
        data: Profile configuration data
        path: Path for error messages

    Raises:
        ConfigError: If the profile entry is invalid
    """
    allowed_keys = {"auth_token", "base_url", "created_at"}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigError(f"Unknown keys in {path}: {sorted(unknown_keys)}")

    auth_token = _optional_str(data, "auth_token", f"{path}.auth_token")
    if not auth_token:
        raise ConfigError(f"Missing required 'auth_token' in {path}")

    # YAML may load an unquoted ISO timestamp as a datetime
    created_at = data.get("created_at")
    if created_at is not None and not isinstance(created_at, str):
        created_at = created_at.isoformat() if hasattr(created_at, "isoformat") else str(created_at)

    return ProfileConfig(
        auth_token=auth_token,
        base_url=_optional_str(data, "base_url", f"{path}.base_url"),
        created_at=created_at,
    )
