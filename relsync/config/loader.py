"""
YAML configuration loading.

Provides:
- Loading from ~/.relsync/config.yaml, $RELSYNC_CONFIG_DIR or a given path
- Graceful handling of missing or empty files
- Type and range validation of known keys
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from relsync.config.settings import Settings, check_bounds
from relsync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)

# Known configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Storage and logging
    "database_path": str,
    "log_dir": str,
    "log_retention_count": int,
    "verbose": bool,
    "debug": bool,
    # Providers
    "page_size": int,
    "api_max_retries": int,
    "api_initial_retry_delay": (int, float),
    "api_max_retry_delay": (int, float),
    "calendar_lookback_days": int,
    "gmail_max_messages": int,
    "google_client_id": str,
    "google_client_secret": str,
    # Job queue
    "max_attempts": int,
    "retry_base_delay": (int, float),
    "poll_interval": (int, float),
    "worker_concurrency": int,
    # Fan-out
    "fan_out_workers": int,
    "fan_out_timeout": (int, float),
    "error_log_limit": int,
}


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _type_name(expected: type[Any] | tuple[type[Any], ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()
        settings = loader.load_settings()
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """Read config.yaml from the config directory ({} when absent)."""
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Read one YAML file into a dict.

        A missing or empty file yields {}.

        Raises:
            ConfigError: If the file is unreadable, is not YAML, or holds
                         something other than a mapping
        """
        path = Path(path)
        if not path.is_file():
            logger.debug(f"No configuration at {path}, using defaults")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML in {path}: {e}") from e

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ConfigError(
                f"{path} must contain a YAML dictionary at the top level, "
                f"not a {type(document).__name__}"
            )

        logger.debug(f"Read {len(document)} configuration key(s) from {path}")
        return document

    @staticmethod
    def _check_value(key: str, value: Any) -> None:
        expected = VALID_KEYS[key]
        # bool is an int subclass; only bool keys accept it
        if isinstance(value, bool) and expected is not bool:
            type_ok = False
        else:
            type_ok = isinstance(value, expected)
        if not type_ok:
            raise ConfigError(
                f"Invalid type for '{key}': expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )

        problem = check_bounds(key, value)
        if problem:
            raise ConfigError(problem)

    def validate(self, config: dict[str, Any]) -> None:
        """
        Check the types and ranges of known keys.

        Unknown keys and null values pass through untouched.

        Raises:
            ConfigError: On the first invalid value
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key in VALID_KEYS and value is not None:
                self._check_value(key, value)

    def load_and_validate(self) -> dict[str, Any]:
        config = self.load()
        self.validate(config)
        return config

    def load_settings(self) -> Settings:
        """Load and validate the file, then build Settings from it."""
        config = self.load_and_validate()
        present = {key: value for key, value in config.items() if value is not None}
        return Settings.from_dict(present, config_dir=self.config_dir)


__all__ = ["ConfigError", "ConfigLoader", "DEFAULT_CONFIG_FILE", "VALID_KEYS"]
