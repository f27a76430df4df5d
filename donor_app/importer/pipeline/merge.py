"""
Merge policy for import rows applied to donors.

Updating an existing donor: every mapped attribute with a non-empty incoming
value overwrites the stored value; attributes that are absent from the
mapping or blank in the row leave stored data untouched. Derived analytics,
identity and the active flag are never written by an import.
"""

from __future__ import annotations

from typing import Any

from donor_app.importer.mapping import DonorRow
from donor_app.models.donor import ContactMethod, Donor, DonorType, EngagementLevel, GiftSizeTier

PROTECTED_FIELDS = frozenset({"id", "is_active", "created_at"}) | Donor.ANALYTICS_FIELDS

CREATE_DEFAULTS: dict[str, Any] = {
    "donor_type": DonorType.COMMUNITY.value,
    "engagement_level": EngagementLevel.NEW.value,
    "gift_size_tier": GiftSizeTier.GRASSROOTS.value,
    "email_opt_in": True,
    "phone_opt_in": False,
    "mail_opt_in": True,
    "preferred_contact_method": ContactMethod.EMAIL.value,
    "country": "USA",
}


def _current(value: Any) -> Any:
    return getattr(value, "value", value)


def merge_into_donor(donor: Donor, row: DonorRow) -> dict[str, dict[str, Any]]:
    """
    Apply ``row`` to ``donor`` and return the changed attributes as a diff.

    Unchanged values are not reassigned so the donor stays clean when the
    row carries nothing new.
    """
    changes: dict[str, dict[str, Any]] = {}
    for attribute, incoming in row.mapped_values().items():
        if attribute in PROTECTED_FIELDS:
            continue
        before = _current(getattr(donor, attribute))
        if before == incoming:
            continue
        setattr(donor, attribute, incoming)
        changes[attribute] = {"before": before, "after": incoming}
    return changes


def build_new_donor(row: DonorRow) -> Donor:
    """Create a donor from ``row`` with defaults for unmapped attributes."""
    values = dict(CREATE_DEFAULTS)
    values.update({key: value for key, value in row.mapped_values().items() if key not in PROTECTED_FIELDS})
    return Donor(is_active=True, **values)


__all__ = ["merge_into_donor", "build_new_donor", "CREATE_DEFAULTS", "PROTECTED_FIELDS"]
