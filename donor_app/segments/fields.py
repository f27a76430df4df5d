"""
Allow-listed donor attributes that segment rules may reference.

Every field carries a value kind; the kind decides which operators apply and
how rule values are coerced before either evaluation backend sees them.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Mapping

from donor_app.exceptions import UnknownFieldError
from donor_app.models.donor import ContactMethod, DonorType, EngagementLevel, GiftSizeTier


class FieldKind(str, enum.Enum):
    STRING = "string"
    ENUM = "enum"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class FieldSpec:
    """A queryable donor attribute."""

    name: str
    attribute: str
    kind: FieldKind
    choices: tuple[str, ...] = ()

    @property
    def is_ordered(self) -> bool:
        return self.kind in ORDERED_KINDS

    @property
    def is_temporal(self) -> bool:
        return self.kind in (FieldKind.DATE, FieldKind.DATETIME)


ORDERED_KINDS = frozenset({FieldKind.INTEGER, FieldKind.DECIMAL, FieldKind.DATE, FieldKind.DATETIME})


def _choices(enum_cls) -> tuple[str, ...]:
    return tuple(member.value for member in enum_cls)


_FIELD_SPECS: tuple[FieldSpec, ...] = (
    # Contact
    FieldSpec("firstName", "first_name", FieldKind.STRING),
    FieldSpec("lastName", "last_name", FieldKind.STRING),
    FieldSpec("email", "email", FieldKind.STRING),
    FieldSpec("phone", "phone", FieldKind.STRING),
    FieldSpec("city", "city", FieldKind.STRING),
    FieldSpec("state", "state", FieldKind.STRING),
    FieldSpec("zipCode", "zip_code", FieldKind.STRING),
    FieldSpec("country", "country", FieldKind.STRING),
    # School linkage
    FieldSpec("donorType", "donor_type", FieldKind.ENUM, _choices(DonorType)),
    FieldSpec("studentName", "student_name", FieldKind.STRING),
    FieldSpec("gradeLevel", "grade_level", FieldKind.STRING),
    FieldSpec("alumniYear", "alumni_year", FieldKind.INTEGER),
    FieldSpec("graduationYear", "graduation_year", FieldKind.INTEGER),
    # Engagement and giving
    FieldSpec("engagementLevel", "engagement_level", FieldKind.ENUM, _choices(EngagementLevel)),
    FieldSpec("giftSizeTier", "gift_size_tier", FieldKind.ENUM, _choices(GiftSizeTier)),
    FieldSpec("lifetimeValue", "lifetime_value", FieldKind.DECIMAL),
    FieldSpec("averageGiftSize", "average_gift_size", FieldKind.DECIMAL),
    FieldSpec("totalDonations", "total_donations", FieldKind.INTEGER),
    FieldSpec("lastDonationDate", "last_donation_date", FieldKind.DATE),
    FieldSpec("firstDonationDate", "first_donation_date", FieldKind.DATE),
    # Preferences
    FieldSpec("emailOptIn", "email_opt_in", FieldKind.BOOLEAN),
    FieldSpec("phoneOptIn", "phone_opt_in", FieldKind.BOOLEAN),
    FieldSpec("mailOptIn", "mail_opt_in", FieldKind.BOOLEAN),
    FieldSpec(
        "preferredContactMethod",
        "preferred_contact_method",
        FieldKind.ENUM,
        _choices(ContactMethod),
    ),
    # System
    FieldSpec("createdAt", "created_at", FieldKind.DATETIME),
    FieldSpec("updatedAt", "updated_at", FieldKind.DATETIME),
)

FIELD_REGISTRY: Mapping[str, FieldSpec] = {
    **{spec.name: spec for spec in _FIELD_SPECS},
    **{spec.attribute: spec for spec in _FIELD_SPECS},
}


def resolve_field(name: object) -> FieldSpec:
    """Return the field spec for a public or attribute name."""
    if not isinstance(name, str) or name not in FIELD_REGISTRY:
        raise UnknownFieldError(str(name))
    return FIELD_REGISTRY[name]


def list_fields() -> list[dict[str, object]]:
    """Describe queryable fields for API consumers."""
    from .query import operators_for

    return [
        {
            "name": spec.name,
            "kind": spec.kind.value,
            "choices": list(spec.choices),
            "operators": [operator.value for operator in operators_for(spec)],
        }
        for spec in _FIELD_SPECS
    ]


__all__ = ["FieldKind", "FieldSpec", "FIELD_REGISTRY", "resolve_field", "list_fields"]
