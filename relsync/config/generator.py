"""
Default configuration file generator.

Writes a commented YAML file documenting every option; all options are
commented out so the defaults in Settings apply until edited.
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """Default YAML configuration with every option documented."""
    return """# relsync configuration
# =====================
#
# Save as ~/.relsync/config.yaml (or in $RELSYNC_CONFIG_DIR).
# Uncomment and modify options as needed; CLI flags override these values.

# Storage and Logging
# -------------------

# SQLite database; relative paths are resolved against the config directory
# Default: relsync.db
# database_path: relsync.db

# Directory for log files
# Default: logs
# log_dir: logs

# Number of log files to keep
# Default: 10
# log_retention_count: 10

# verbose: false
# debug: false


# Providers
# ---------

# Items requested per page from provider APIs (1-1000 for Google)
# Default: 100
# page_size: 100

# Attempts per API call on rate limits and server errors
# Default: 5
# api_max_retries: 5

# Initial and maximum backoff delay in seconds
# api_initial_retry_delay: 1.0
# api_max_retry_delay: 60.0

# How far back calendar events are imported, in days
# Default: 365
# calendar_lookback_days: 365

# Recent messages scanned for mail correspondents
# Default: 200
# gmail_max_messages: 200

# OAuth client used to refresh Google access tokens
# google_client_id: your-client-id.apps.googleusercontent.com
# google_client_secret: your-client-secret


# Job Queue
# ---------

# Attempts per job before it is discarded
# Default: 3
# max_attempts: 3

# Base retry delay in seconds; doubled after each failed attempt
# Default: 30
# retry_base_delay: 30

# Seconds between queue polls when idle
# Default: 5
# poll_interval: 5

# Jobs processed concurrently by one worker
# Default: 1
# worker_concurrency: 1


# Fan-out
# -------

# Concurrent per-record requests within one sync run
# Default: 10
# fan_out_workers: 10

# Seconds before a single per-record request is abandoned
# Default: 30
# fan_out_timeout: 30

# Maximum entries kept in a sync job's error log
# Default: 100
# error_log_limit: 100
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, Optional[str]]:
    """
    Write the default configuration file.

    Args:
        config_path: Destination path
        overwrite: Replace an existing file

    Returns:
        (True, None) on success, (False, error_message) on failure
    """
    config_path = config_path.expanduser().resolve()

    if config_path.exists() and not overwrite:
        return (
            False,
            f"Configuration file already exists: {config_path}\n"
            "Use --force to overwrite.",
        )

    try:
        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        # May hold an OAuth client secret
        config_path.chmod(0o600)
    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)

    logger.info(f"Created configuration file: {config_path}")
    return (True, None)


__all__ = ["generate_default_config", "save_config_file"]
