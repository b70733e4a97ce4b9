"""
Typed runtime settings.

Settings is the validated projection of the YAML configuration. Every
field has a default, so an empty or missing config file yields a working
setup rooted at the config directory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from relsync.utils.paths import DEFAULT_DATABASE_NAME, resolve_config_dir

logger = logging.getLogger(__name__)


class SettingsError(Exception):
    """Raised when a settings value is outside its allowed range."""

    pass


# Lower bounds per numeric setting: (minimum, inclusive)
NUMERIC_BOUNDS: dict[str, tuple[float, bool]] = {
    "log_retention_count": (0, True),
    "page_size": (1, True),
    "max_attempts": (1, True),
    "retry_base_delay": (0, True),
    "poll_interval": (0, False),
    "worker_concurrency": (1, True),
    "fan_out_workers": (1, True),
    "fan_out_timeout": (0, False),
    "error_log_limit": (1, True),
    "api_max_retries": (1, True),
    "api_initial_retry_delay": (0, False),
    "api_max_retry_delay": (0, False),
    "calendar_lookback_days": (0, True),
    "gmail_max_messages": (0, True),
}


def check_bounds(key: str, value: Any) -> Optional[str]:
    """Error message if value violates the bound for key, else None."""
    if key not in NUMERIC_BOUNDS:
        return None
    minimum, inclusive = NUMERIC_BOUNDS[key]
    if inclusive and value < minimum:
        return f"{key} must be >= {minimum}, got {value}"
    if not inclusive and value <= minimum:
        return f"{key} must be > {minimum}, got {value}"
    return None


@dataclass
class Settings:
    """
    Runtime settings with defaults.

    Usage:
        settings = Settings.from_dict(ConfigLoader().load_and_validate())
        db = SyncDatabase(settings.database_path)
    """

    database_path: Optional[str] = None  # None: <config_dir>/relsync.db
    log_dir: Optional[str] = None  # None: <config_dir>/logs
    log_retention_count: int = 10

    # Provider paging and API retries
    page_size: int = 100
    api_max_retries: int = 5
    api_initial_retry_delay: float = 1.0
    api_max_retry_delay: float = 60.0
    calendar_lookback_days: int = 365
    gmail_max_messages: int = 200

    # Job queue
    max_attempts: int = 3
    retry_base_delay: float = 30.0  # seconds, doubled per attempt
    poll_interval: float = 5.0
    worker_concurrency: int = 1

    # Per-record fan-out
    fan_out_workers: int = 10
    fan_out_timeout: float = 30.0

    error_log_limit: int = 100

    # OAuth client used to refresh Google tokens
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    verbose: bool = False
    debug: bool = False

    def __post_init__(self) -> None:
        for f in fields(self):
            error = check_bounds(f.name, getattr(self, f.name))
            if error:
                raise SettingsError(error)

    @classmethod
    def from_dict(
        cls, config: Optional[dict[str, Any]], config_dir: Path | str | None = None
    ) -> Settings:
        """
        Build settings from a config mapping, filling in defaults.

        Unknown keys are ignored with a debug message. Relative paths are
        resolved against the config directory.

        Raises:
            SettingsError: If a value is out of range
        """
        config = dict(config or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            logger.debug(f"Ignoring unknown settings: {', '.join(unknown)}")

        values = {k: v for k, v in config.items() if k in known}
        base_dir = resolve_config_dir(config_dir)

        if not values.get("database_path"):
            values["database_path"] = str(base_dir / DEFAULT_DATABASE_NAME)
        elif values["database_path"] != ":memory:":
            values["database_path"] = str(
                _resolve_path(values["database_path"], base_dir)
            )
        if values.get("log_dir"):
            values["log_dir"] = str(_resolve_path(values["log_dir"], base_dir))

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Settings as a plain dict, with secrets masked."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data.get("google_client_secret"):
            data["google_client_secret"] = "********"
        return data


def _resolve_path(value: str, base_dir: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


__all__ = ["NUMERIC_BOUNDS", "Settings", "SettingsError", "check_bounds"]
