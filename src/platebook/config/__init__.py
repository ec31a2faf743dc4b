"""
Configuration management for Platebook.

This module handles loading, validating, and saving configuration settings.
"""

from platebook.config.settings import (
    DEFAULT_CONFIG_DIR,
    BackupConfig,
    ConfigurationError,
    Settings,
    StorageConfig,
    load_config,
    save_config,
)

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "Settings",
    "StorageConfig",
    "BackupConfig",
    "load_config",
    "save_config",
    "ConfigurationError",
]
