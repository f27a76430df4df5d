from __future__ import annotations

from typing import Any

from rapidfuzz.distance import Levenshtein

from donor_app.utils.normalize import clean_text

FIRST_NAME_WEIGHT = 0.4
LAST_NAME_WEIGHT = 0.6

STREET_WEIGHT = 0.4
CITY_WEIGHT = 0.3
ZIP_WEIGHT = 0.3


def string_similarity(left: object | None, right: object | None) -> float:
    """
    Levenshtein similarity ``1 - distance / max(len)`` in the range 0..1.

    Identical strings score 1.0 (including two empty strings); a single empty
    side scores 0.0. The measure is symmetric.
    """
    a = "" if left is None else str(left)
    b = "" if right is None else str(right)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return float(Levenshtein.normalized_similarity(a, b))


def name_similarity(candidate: Any, existing: Any) -> float:
    """Case-insensitive blend of first-name (40%) and last-name (60%) similarity."""
    first = string_similarity(
        clean_text(getattr(candidate, "first_name", None)).lower(),
        clean_text(getattr(existing, "first_name", None)).lower(),
    )
    last = string_similarity(
        clean_text(getattr(candidate, "last_name", None)).lower(),
        clean_text(getattr(existing, "last_name", None)).lower(),
    )
    return first * FIRST_NAME_WEIGHT + last * LAST_NAME_WEIGHT


def address_similarity(candidate: Any, existing: Any) -> float:
    """
    Weighted address blend: street 40% (fuzzy), city 30% (exact), ZIP 30% (exact).

    Only components present on both records participate; the blend is
    renormalized over their weights. No shared component scores 0.0.
    """
    score = 0.0
    weight = 0.0

    street_a = clean_text(getattr(candidate, "address", None)).lower()
    street_b = clean_text(getattr(existing, "address", None)).lower()
    if street_a and street_b:
        score += string_similarity(street_a, street_b) * STREET_WEIGHT
        weight += STREET_WEIGHT

    city_a = clean_text(getattr(candidate, "city", None)).lower()
    city_b = clean_text(getattr(existing, "city", None)).lower()
    if city_a and city_b:
        score += (1.0 if city_a == city_b else 0.0) * CITY_WEIGHT
        weight += CITY_WEIGHT

    zip_a = clean_text(getattr(candidate, "zip_code", None))
    zip_b = clean_text(getattr(existing, "zip_code", None))
    if zip_a and zip_b:
        score += (1.0 if zip_a == zip_b else 0.0) * ZIP_WEIGHT
        weight += ZIP_WEIGHT

    return score / weight if weight else 0.0


__all__ = [
    "string_similarity",
    "name_similarity",
    "address_similarity",
]
