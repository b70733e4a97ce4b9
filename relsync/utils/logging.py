"""
Logging setup for relsync.

Two loggers matter:
- "relsync": the package hierarchy. Console on stderr at the chosen level,
  plus a daily file that always records DEBUG.
- "relsync.reconcile": one line per identity resolution, merge and event
  decision, written to its own per-session file and never propagated.

Levels can be forced with RELSYNC_DEBUG / RELSYNC_LOG_LEVEL, and the log
file location with RELSYNC_LOG_FILE ("none" disables it).
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from relsync.utils.paths import resolve_config_dir

ROOT_LOGGER_NAME = "relsync"
RECONCILE_LOGGER_NAME = "relsync.reconcile"

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Milliseconds, so decisions within one run keep their order
RECONCILE_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"

ENV_LOG_LEVEL = "RELSYNC_LOG_LEVEL"
ENV_DEBUG = "RELSYNC_DEBUG"
ENV_LOG_FILE = "RELSYNC_LOG_FILE"

SYNC_LOG_PREFIX = "relsync_"
RECONCILE_LOG_PREFIX = "reconcile_"

_LEVEL_NAMES = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_DISABLED_FILE_VALUES = ("", "none", "disabled")

# Set by setup_logging(); later helpers fall back to it
_active_log_dir: Optional[Path] = None


def default_log_dir() -> Path:
    return resolve_config_dir() / "logs"


def _log_dir(log_dir: Optional[Path] = None) -> Path:
    return log_dir or _active_log_dir or default_log_dir()


class ColoredFormatter(logging.Formatter):
    """
    Console formatter that colours the level name on capable terminals.

    Colour is off when stderr is not a TTY, NO_COLOR is set, or TERM is
    "dumb". The record itself is never modified, so file handlers sharing
    it see plain text.
    """

    PALETTE = {
        logging.DEBUG: "36",  # cyan
        logging.INFO: "32",  # green
        logging.WARNING: "33",  # yellow
        logging.ERROR: "31",  # red
        logging.CRITICAL: "35",  # magenta
    }

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._terminal_has_color()

    @staticmethod
    def _terminal_has_color() -> bool:
        isatty = getattr(sys.stderr, "isatty", None)
        if isatty is None or not isatty():
            return False
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        code = self.PALETTE.get(record.levelno)
        if not self.use_colors or code is None:
            return super().format(record)

        tinted = logging.makeLogRecord(record.__dict__)
        tinted.levelname = f"\033[{code}m{record.levelname}\033[0m"
        return super().format(tinted)


def get_log_level_from_env() -> int:
    """
    Level requested by the environment.

    RELSYNC_DEBUG (1/true/yes) wins over RELSYNC_LOG_LEVEL; an unknown
    level name means INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    name = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return _LEVEL_NAMES.get(name, logging.INFO)


def _dated_log_name(prefix: str) -> str:
    return f"{prefix}{datetime.now():%Y%m%d}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Daily log file for the main logger.

    RELSYNC_LOG_FILE overrides the location; "none" turns file logging off
    and returns None.
    """
    override = os.environ.get(ENV_LOG_FILE)
    if override is not None:
        if override.strip().lower() in _DISABLED_FILE_VALUES:
            return None
        return Path(override)
    return _log_dir(log_dir) / _dated_log_name(SYNC_LOG_PREFIX)


def _reset(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False
    return logger


def _add_file_handler(
    logger: logging.Logger, path: Path, level: int, formatter: logging.Formatter
) -> bool:
    """Attach a UTF-8 file handler, creating parent directories."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not open log file {path}: {e}")
        return False
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return True


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the relsync logger. Safe to call more than once.

    Args:
        level: Console level; taken from the environment when None
        verbose: Force DEBUG and include source locations on the console
        log_dir: Directory for the daily log file
        log_file: Exact log file, taking precedence over log_dir
        enable_file_logging: Set False for console output only
        use_colors: Colour console level names where supported

    Returns:
        The "relsync" logger
    """
    global _active_log_dir

    if verbose:
        level = logging.DEBUG
    elif level is None:
        level = get_log_level_from_env()

    logger = _reset(ROOT_LOGGER_NAME, level)

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(
        ColoredFormatter(console_format, DATE_FORMAT, use_colors=use_colors)
    )
    logger.addHandler(console)

    _active_log_dir = log_file.parent if log_file else log_dir

    if enable_file_logging:
        path = log_file or get_log_file_path(log_dir)
        if path is not None:
            # The file captures everything regardless of console level
            logger.setLevel(logging.DEBUG)
            file_formatter = logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
            if _add_file_handler(logger, path, logging.DEBUG, file_formatter):
                logger.debug(f"Logging to {path}")

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Remove old main and reconcile log files.

    The newest keep_count files of each kind survive; keep_count <= 0
    disables cleanup.

    Returns:
        Number of files removed
    """
    directory = _log_dir(log_dir)
    if keep_count <= 0 or not directory.is_dir():
        return 0

    removed = 0
    for prefix in (SYNC_LOG_PREFIX, RECONCILE_LOG_PREFIX):
        files = list(directory.glob(f"{prefix}*.log"))
        files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for stale in files[keep_count:]:
            try:
                stale.unlink()
            except OSError as e:
                get_logger(__name__).debug(f"Could not remove {stale}: {e}")
                continue
            removed += 1
    return removed


def get_logger(name: str) -> logging.Logger:
    """Logger named under "relsync", prefixing foreign names."""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def get_reconcile_log_path(log_dir: Optional[Path] = None) -> Path:
    """Per-session reconcile log path, stamped to the second."""
    stamp = f"{datetime.now():%Y%m%d_%H%M%S}"
    return _log_dir(log_dir) / f"{RECONCILE_LOG_PREFIX}{stamp}.log"


def setup_reconcile_logger(
    log_file: Optional[Path] = None, level: int = logging.DEBUG
) -> logging.Logger:
    """
    Route reconcile decisions to their own file.

    Falls back to stderr when the file cannot be opened, so decisions are
    never silently lost.
    """
    logger = _reset(RECONCILE_LOGGER_NAME, level)
    formatter = logging.Formatter(RECONCILE_LOG_FORMAT, DATE_FORMAT)
    path = log_file or get_reconcile_log_path()

    if _add_file_handler(logger, path, level, formatter):
        logger.info(f"Reconcile session started {datetime.now().isoformat()}")
    else:
        fallback = logging.StreamHandler(sys.stderr)
        fallback.setLevel(level)
        fallback.setFormatter(formatter)
        logger.addHandler(fallback)
    return logger


def get_reconcile_logger() -> logging.Logger:
    return logging.getLogger(RECONCILE_LOGGER_NAME)


__all__ = [
    "CONSOLE_FORMAT",
    "DATE_FORMAT",
    "RECONCILE_LOG_FORMAT",
    "VERBOSE_FORMAT",
    "ColoredFormatter",
    "cleanup_old_logs",
    "default_log_dir",
    "get_log_file_path",
    "get_log_level_from_env",
    "get_logger",
    "get_reconcile_log_path",
    "get_reconcile_logger",
    "setup_logging",
    "setup_reconcile_logger",
]
