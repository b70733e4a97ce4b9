"""CLI package for relsync."""

from relsync.cli.formatters import (
    format_counters,
    show_connections,
    show_jobs,
    show_queue_counts,
    show_sync_result,
)
from relsync.cli.main import cli, get_config_dir, get_config_file, get_database
from relsync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "cli",
    "format_counters",
    "get_config_dir",
    "get_config_file",
    "get_database",
    "show_connections",
    "show_jobs",
    "show_queue_counts",
    "show_sync_result",
]
