"""
relsync.utils - Utility module

Common utilities including logging configuration and value normalization.
"""

from relsync.utils.normalization import (
    name_completeness,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_string,
    normalize_title,
    phone_digits,
)
from relsync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "name_completeness",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    "normalize_string",
    "normalize_title",
    "phone_digits",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]
