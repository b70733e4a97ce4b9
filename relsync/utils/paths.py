"""
Where relsync keeps its files.

The configuration directory holds config.yaml, the SQLite database and the
logs directory. The CLI, the worker and the config loader all locate it
through resolve_config_dir().
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".relsync"
CONFIG_DIR_ENV_VAR = "RELSYNC_CONFIG_DIR"
DEFAULT_DATABASE_NAME = "relsync.db"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Absolute configuration directory.

    An explicit argument wins, then $RELSYNC_CONFIG_DIR, then ~/.relsync.
    """
    chosen = config_dir
    if chosen is None:
        chosen = os.environ.get(CONFIG_DIR_ENV_VAR) or DEFAULT_CONFIG_DIR
    return Path(chosen).expanduser().resolve()


def default_database_path(config_dir: Path | str | None = None) -> Path:
    return resolve_config_dir(config_dir) / DEFAULT_DATABASE_NAME


__all__ = [
    "CONFIG_DIR_ENV_VAR",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_DATABASE_NAME",
    "default_database_path",
    "resolve_config_dir",
]
