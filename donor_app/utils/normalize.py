"""
Normalization helpers shared by the donor model lookup keys and duplicate matching.
"""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D+")
_WHITESPACE = re.compile(r"\s+")


def clean_text(value: object | None) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim an email address; blank values become ``None``."""
    token = clean_text(value)
    return token.lower() if token else None


def normalize_phone(value: object | None) -> str | None:
    """Strip every non-digit character; values without digits become ``None``."""
    token = clean_text(value)
    if not token:
        return None
    digits = _NON_DIGITS.sub("", token)
    return digits or None


def normalize_name(value: object | None) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", clean_text(value)).lower()


__all__ = ["clean_text", "normalize_email", "normalize_phone", "normalize_name"]
