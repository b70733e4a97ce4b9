"""
relsync.config - Configuration loading, validation and defaults.
"""

from relsync.config.generator import generate_default_config, save_config_file
from relsync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from relsync.config.settings import Settings, SettingsError

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "Settings",
    "SettingsError",
    "generate_default_config",
    "save_config_file",
]
