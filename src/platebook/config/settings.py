"""
Configuration settings management for Platebook.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.platebook/config.yaml by default, with the
path overridable via the PLATEBOOK_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".platebook"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"


@dataclass
class StorageConfig:
    """Location of the live state inside the data directory."""

    database_name: str = "platebook.db"
    database_dir: str = "SQLite"
    images_dir: str = "images"
    settings_name: str = "settings.db"


@dataclass
class BackupConfig:
    """Export, import and safety backup settings."""

    export_dir: str = str(DEFAULT_CONFIG_DIR / "exports")
    work_dir: str = str(DEFAULT_CONFIG_DIR / "cache")
    safety_retention_hours: int = 24
    text_safe_archives: bool = False


@dataclass
class Settings:
    """
    Complete Platebook configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with PLATEBOOK_.

    Attributes:
        data_dir: Directory holding the live database and images.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        app_version: Version recorded in exported archives. Empty means
            the installed package version.
        storage: Live state layout.
        backup: Export/import settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"
    app_version: str = ""

    storage: StorageConfig = field(default_factory=StorageConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)

    @property
    def database_path(self) -> Path:
        """Absolute path of the live SQLite database file."""
        return Path(self.data_dir) / self.storage.database_dir / self.storage.database_name

    @property
    def images_path(self) -> Path:
        """Absolute path of the live images directory."""
        return Path(self.data_dir) / self.storage.images_dir

    @property
    def settings_path(self) -> Path:
        """Absolute path of the bookkeeping settings database."""
        return Path(self.data_dir) / self.storage.database_dir / self.storage.settings_name

    def resolved_app_version(self) -> str:
        """Return the configured app version or the package version."""
        if self.app_version:
            return self.app_version
        from platebook import __version__

        return __version__


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from PLATEBOOK_CONFIG environment variable if set,
    otherwise returns the default path (~/.platebook/config.yaml).
    """
    env_path = os.environ.get("PLATEBOOK_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses PLATEBOOK_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    platebook_data = data.get("platebook", {})

    if "data_dir" in platebook_data:
        settings.data_dir = str(Path(platebook_data["data_dir"]).expanduser())
    if "log_level" in platebook_data:
        settings.log_level = str(platebook_data["log_level"]).upper()
    if "app_version" in platebook_data:
        settings.app_version = str(platebook_data["app_version"])

    storage = data.get("storage", {})
    if "database_name" in storage:
        settings.storage.database_name = str(storage["database_name"])
    if "database_dir" in storage:
        settings.storage.database_dir = str(storage["database_dir"])
    if "images_dir" in storage:
        settings.storage.images_dir = str(storage["images_dir"])
    if "settings_name" in storage:
        settings.storage.settings_name = str(storage["settings_name"])

    backup = data.get("backup", {})
    if "export_dir" in backup:
        settings.backup.export_dir = str(Path(backup["export_dir"]).expanduser())
    if "work_dir" in backup:
        settings.backup.work_dir = str(Path(backup["work_dir"]).expanduser())
    if "safety_retention_hours" in backup:
        try:
            settings.backup.safety_retention_hours = int(backup["safety_retention_hours"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"safety_retention_hours must be an integer: {backup['safety_retention_hours']!r}"
            ) from e
    if "text_safe_archives" in backup:
        settings.backup.text_safe_archives = bool(backup["text_safe_archives"])

    return settings


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "PLATEBOOK_DATA_DIR": ("data_dir", str),
        "PLATEBOOK_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "PLATEBOOK_APP_VERSION": ("app_version", str),
        "PLATEBOOK_DATABASE_NAME": ("storage.database_name", str),
        "PLATEBOOK_EXPORT_DIR": ("backup.export_dir", str),
        "PLATEBOOK_WORK_DIR": ("backup.work_dir", str),
        "PLATEBOOK_SAFETY_RETENTION_HOURS": ("backup.safety_retention_hours", int),
        "PLATEBOOK_TEXT_SAFE_ARCHIVES": ("backup.text_safe_archives", _parse_bool),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.safety_retention_hours < 1:
        raise ConfigurationError("safety_retention_hours must be at least 1")

    if settings.storage.settings_name == settings.storage.database_name:
        raise ConfigurationError("settings_name must differ from database_name")

    for name in (
        settings.storage.database_name,
        settings.storage.images_dir,
        settings.storage.settings_name,
    ):
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ConfigurationError(f"Invalid storage name: {name!r}")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "platebook": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
            "app_version": settings.app_version,
        },
        "storage": {
            "database_name": settings.storage.database_name,
            "database_dir": settings.storage.database_dir,
            "images_dir": settings.storage.images_dir,
            "settings_name": settings.storage.settings_name,
        },
        "backup": {
            "export_dir": settings.backup.export_dir,
            "work_dir": settings.backup.work_dir,
            "safety_retention_hours": settings.backup.safety_retention_hours,
            "text_safe_archives": settings.backup.text_safe_archives,
        },
    }
