"""
Value normalization utilities for record reconciliation.

Provides the canonical forms used wherever two values must compare equal
across providers:
- Emails: lowercased and trimmed
- Phones: E.164-style ("+" followed by digits)
- Display names: trimmed only (name matching is case-sensitive)
- Event titles: trimmed and casefolded
- Free-form keys: accent-stripped alphanumerics for de-duplication
"""

from __future__ import annotations

import re
import unicodedata

# Digits assumed for a bare national number with no country code
DEFAULT_COUNTRY_CODE = "1"


def normalize_string(
    value: str | None,
    sort_words: bool = False,
    remove_spaces: bool = True,
    strip_punctuation: bool = True,
) -> str:
    """
    Normalize a string for matching key generation.

    Args:
        value: String to normalize
        sort_words: If True, sort words alphabetically before joining.
                   This handles name order variations like "Last, First"
                   vs "First Last".
        remove_spaces: If True, remove all spaces from the result.
                      If False, multiple spaces are collapsed to single space.
        strip_punctuation: If True, remove non-alphanumeric characters.

    Returns:
        Normalized lowercase string with special characters handled
    """
    if not value:
        return ""

    # Decompose accents, then drop the combining marks
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))
    normalized = normalized.lower()

    if strip_punctuation:
        normalized = re.sub(r"[^a-z0-9\s]", "", normalized)

    normalized = re.sub(r"\s+", " ", normalized).strip()

    if sort_words:
        normalized = "".join(sorted(normalized.split()))
    elif remove_spaces:
        normalized = normalized.replace(" ", "")

    return normalized


def normalize_email(value: str | None) -> str:
    """Lowercase and trim an email address. Returns "" for empty input."""
    if not value:
        return ""
    return value.strip().lower()


def phone_digits(value: str | None) -> str:
    """Return only the digits of a phone number."""
    if not value:
        return ""
    return re.sub(r"\D", "", value)


def normalize_phone(value: str | None) -> str:
    """
    Normalize a phone number to an E.164-style string.

    A number written with a leading "+" keeps its country code. A bare
    10-digit number is treated as a national number and gets the default
    country code; an 11-digit number starting with that code is assumed to
    already carry it. Anything else is kept as "+<digits>".

    Args:
        value: Phone number in any common format

    Returns:
        Normalized phone number, or "" if the input has no digits
    """
    digits = phone_digits(value)
    if not digits:
        return ""

    if value is not None and value.strip().startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+{DEFAULT_COUNTRY_CODE}{digits}"
    return f"+{digits}"


def normalize_name(value: str | None) -> str:
    """Trim a display name. Case and inner spacing are preserved."""
    if not value:
        return ""
    return value.strip()


def normalize_title(value: str | None) -> str:
    """Normalize an event title for case-insensitive comparison."""
    if not value:
        return ""
    return value.strip().casefold()


def name_completeness(value: str | None) -> tuple[int, int]:
    """
    Rank a display name by completeness.

    More space-separated tokens wins; character length breaks ties.
    """
    name = normalize_name(value)
    return (len(name.split()), len(name))
