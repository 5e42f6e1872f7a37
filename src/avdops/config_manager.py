"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores operator preferences like subscription, authentication method,
default local admin name and registration polling tunables.

Security:
- Config file permissions: 0600 (owner read/write only)
- Path validation
"""

import logging
import os
import tempfile
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomli
import tomlkit

from avdops.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_ADMIN = "avdadmin"
DEFAULT_IMAGE_RESOURCE_GROUP = "avd-image-builder-rg"


def default_state_dir() -> str:
    """Well-known transient location for maintenance records."""
    return str(Path(tempfile.gettempdir()) / "avdops")


@dataclass
class AvdopsConfig:
    """avdops configuration data."""

    subscription_id: str | None = None
    auth_method: str = "azure_cli"
    local_admin_user: str = DEFAULT_LOCAL_ADMIN
    state_dir: str | None = None
    registration_settle_seconds: float = 15.0
    registration_poll_interval: float = 10.0
    registration_max_attempts: int = 12
    image_resource_group: str = DEFAULT_IMAGE_RESOURCE_GROUP
    image_location: str | None = None

    @property
    def maintenance_state_dir(self) -> Path:
        return Path(self.state_dir or default_state_dir()).expanduser()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AvdopsConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    def validate(self) -> None:
        if self.auth_method not in ("azure_cli", "default", "managed_identity"):
            raise ConfigError(
                f"Invalid auth_method '{self.auth_method}' "
                "(expected azure_cli, default or managed_identity)"
            )
        if int(self.registration_max_attempts) < 1:
            raise ConfigError("registration_max_attempts must be at least 1")
        if float(self.registration_poll_interval) < 0 or float(
            self.registration_settle_seconds
        ) < 0:
            raise ConfigError("Registration polling delays cannot be negative")


class ConfigManager:
    """Manage the avdops configuration file.

    Configuration is stored at ~/.avdops/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".avdops"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def _validate_config_path(cls, path: Path) -> Path:
        """Validate configuration file path for security.

        The path must resolve inside ~/.avdops/, the current working
        directory or the system temporary directory.

        Raises:
            ConfigError: If path is outside allowed directories
        """
        resolved_path = path.resolve()
        allowed_dirs = [
            cls.DEFAULT_CONFIG_DIR.resolve(),
            Path.cwd().resolve(),
            Path(tempfile.gettempdir()).resolve(),
        ]

        for allowed_dir in allowed_dirs:
            try:
                resolved_path.relative_to(allowed_dir)
                return resolved_path
            except ValueError:
                continue

        raise ConfigError(
            f"Config path outside allowed directories: {resolved_path}\n"
            f"Allowed directories:\n"
            f"  - {cls.DEFAULT_CONFIG_DIR}\n"
            f"  - {Path.cwd()}\n"
            f"  - {tempfile.gettempdir()}"
        )

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Raises:
            ConfigError: If a custom path is invalid or does not exist
        """
        if custom_path:
            path = cls._validate_config_path(Path(custom_path).expanduser())
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            return path

        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def ensure_config_dir(cls) -> Path:
        """Ensure config directory exists with secure permissions (0700)."""
        try:
            cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
            os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)
            return cls.DEFAULT_CONFIG_DIR
        except OSError as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> AvdopsConfig:
        """Load configuration from file, falling back to defaults.

        Raises:
            ConfigError: If the file exists but cannot be parsed
        """
        config_path = cls.get_config_path(custom_path)

        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return AvdopsConfig()

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)

        except (OSError, tomli.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

        logger.debug(f"Loaded config from: {config_path}")
        return AvdopsConfig.from_dict(data)

    @classmethod
    def save_config(cls, config: AvdopsConfig, custom_path: str | None = None) -> Path:
        """Save configuration atomically, preserving comments in an existing file.

        Raises:
            ConfigError: If saving fails or path is outside allowed directories
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = cls._validate_config_path(Path(custom_path).expanduser())
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.ensure_config_dir()
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()
            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except (OSError, ValueError) as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> AvdopsConfig:
        """Update configuration values and persist them."""
        config = cls.load_config(custom_path)
        for key, value in updates.items():
            if hasattr(config, key):
                setattr(config, key, value)
            else:
                logger.warning(f"Unknown config key: {key}")
        config.validate()
        cls.save_config(config, custom_path)
        return config

    @classmethod
    def get_local_admin_user(
        cls, cli_value: str | None = None, custom_path: str | None = None
    ) -> str:
        """Local admin username with CLI override."""
        if cli_value:
            return cli_value
        return cls.load_config(custom_path).local_admin_user


__all__ = ["AvdopsConfig", "ConfigManager", "default_state_dir"]
