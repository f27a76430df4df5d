"""
Typed mapping of raw tabular rows onto donor attributes.

Rows are converted into an immutable ``DonorRow`` before any business logic
runs. Structural problems (an unparsable year, an unknown donor type) raise
``ValidationError`` here, so untyped data never reaches duplicate detection
or the merge step.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Mapping

from donor_app.exceptions import ValidationError
from donor_app.models.donor import ContactMethod, DonorType, EngagementLevel, GiftSizeTier
from donor_app.utils.normalize import clean_text

FORMULA_PREFIXES = ("=", "+", "-", "@")
FORMULA_ESCAPE = "'"

_TRUE_TOKENS = {"true", "t", "yes", "y", "1", "on"}
_FALSE_TOKENS = {"false", "f", "no", "n", "0", "off"}


@dataclass(frozen=True)
class DonorRow:
    """A mapped import row; ``None`` means the column was absent or blank."""

    row_number: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    donor_type: str | None = None
    engagement_level: str | None = None
    gift_size_tier: str | None = None
    student_name: str | None = None
    grade_level: str | None = None
    alumni_year: int | None = None
    graduation_year: int | None = None
    email_opt_in: bool | None = None
    phone_opt_in: bool | None = None
    mail_opt_in: bool | None = None
    preferred_contact_method: str | None = None
    notes: str | None = None
    source: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def mapped_values(self) -> dict[str, Any]:
        """Donor attributes carried by this row (present, non-empty values only)."""
        return {name: getattr(self, name) for name in IMPORTABLE_FIELDS if getattr(self, name) is not None}

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("source", None)
        return {key: value for key, value in payload.items() if value is not None}


IMPORTABLE_FIELDS: tuple[str, ...] = tuple(
    spec.name for spec in fields(DonorRow) if spec.name not in {"row_number", "source"}
)

# Public camelCase names accepted in field mappings and API payloads.
FIELD_ALIASES: dict[str, str] = {
    "firstName": "first_name",
    "lastName": "last_name",
    "zipCode": "zip_code",
    "donorType": "donor_type",
    "engagementLevel": "engagement_level",
    "giftSizeTier": "gift_size_tier",
    "studentName": "student_name",
    "gradeLevel": "grade_level",
    "alumniYear": "alumni_year",
    "graduationYear": "graduation_year",
    "emailOptIn": "email_opt_in",
    "phoneOptIn": "phone_opt_in",
    "mailOptIn": "mail_opt_in",
    "preferredContactMethod": "preferred_contact_method",
}


def resolve_target(name: str) -> str | None:
    """Return the donor attribute for a mapping target, or ``None`` if not importable."""
    attribute = FIELD_ALIASES.get(name, name)
    return attribute if attribute in IMPORTABLE_FIELDS else None


def normalize_field_mapping(field_mapping: Mapping[str, Any]) -> dict[str, str]:
    """
    Validate a ``{target attribute: source column}`` mapping.

    Targets may use camelCase or attribute names; blank source columns are
    dropped. Unknown targets raise ``ValueError``.
    """
    if not isinstance(field_mapping, Mapping):
        raise ValueError("Field mapping must be an object of {target: column}.")
    normalized: dict[str, str] = {}
    unknown: list[str] = []
    for target, column in field_mapping.items():
        attribute = resolve_target(str(target))
        if attribute is None:
            unknown.append(str(target))
            continue
        column_name = clean_text(column)
        if column_name:
            normalized[attribute] = column_name
    if unknown:
        raise ValueError(f"Unknown mapping targets: {', '.join(sorted(unknown))}")
    return normalized


def sanitize_value(value: str) -> str:
    """Neutralize spreadsheet formula injection by prefixing an apostrophe."""
    if value and value[0] in FORMULA_PREFIXES:
        return f"{FORMULA_ESCAPE}{value}"
    return value


def _coerce_year(value: str, attribute: str, row_number: int | None) -> int:
    try:
        number = int(float(value)) if "." in value else int(value)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(
            f"Invalid {attribute}: '{value}' is not a year", field=attribute, row_number=row_number
        ) from exc
    if number < 1800 or number > 2200:
        raise ValidationError(f"Invalid {attribute}: {number} is out of range", field=attribute, row_number=row_number)
    return number


def _coerce_bool(value: str, attribute: str, row_number: int | None) -> bool:
    token = value.strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    raise ValidationError(f"Invalid {attribute}: '{value}' is not yes/no", field=attribute, row_number=row_number)


def _choice_coercer(enum_cls) -> Callable[[str, str, int | None], str]:
    choices = {member.value for member in enum_cls}

    def _coerce(value: str, attribute: str, row_number: int | None) -> str:
        token = value.strip().lower().replace(" ", "_").replace("-", "_")
        if token not in choices:
            raise ValidationError(
                f"Invalid {attribute}: '{value}' must be one of {', '.join(sorted(choices))}",
                field=attribute,
                row_number=row_number,
            )
        return token

    return _coerce


_TYPED_COERCERS: dict[str, Callable[[str, str, int | None], Any]] = {
    "alumni_year": _coerce_year,
    "graduation_year": _coerce_year,
    "email_opt_in": _coerce_bool,
    "phone_opt_in": _coerce_bool,
    "mail_opt_in": _coerce_bool,
    "donor_type": _choice_coercer(DonorType),
    "engagement_level": _choice_coercer(EngagementLevel),
    "gift_size_tier": _choice_coercer(GiftSizeTier),
    "preferred_contact_method": _choice_coercer(ContactMethod),
}


def map_row(
    raw: Mapping[str, Any],
    field_mapping: Mapping[str, str],
    *,
    row_number: int | None = None,
) -> DonorRow:
    """
    Build a ``DonorRow`` from a header-keyed record.

    Blank and missing source values are left unset. Text values are
    sanitized; typed attributes are coerced and raise ``ValidationError``
    when they cannot be.
    """
    values: dict[str, Any] = {}
    for target, column in field_mapping.items():
        attribute = resolve_target(target)
        if attribute is None:
            continue
        text = clean_text(raw.get(column))
        if not text:
            continue
        coercer = _TYPED_COERCERS.get(attribute)
        if coercer is not None:
            values[attribute] = coercer(text, attribute, row_number)
        else:
            values[attribute] = sanitize_value(text)
    return DonorRow(row_number=row_number, source=dict(raw), **values)


def row_from_payload(payload: Mapping[str, Any]) -> DonorRow:
    """Build a ``DonorRow`` from an API payload keyed by donor field names."""
    identity = {}
    for key in payload:
        attribute = resolve_target(str(key))
        if attribute is not None:
            identity[attribute] = key
    return map_row(payload, identity)


def validate_required(row: DonorRow) -> DonorRow:
    """Business validation: a donor needs both a first and a last name."""
    if not row.first_name or not row.last_name:
        raise ValidationError(
            "Missing required fields: firstName or lastName",
            field="first_name" if not row.first_name else "last_name",
            row_number=row.row_number,
        )
    return row


__all__ = [
    "DonorRow",
    "IMPORTABLE_FIELDS",
    "FIELD_ALIASES",
    "resolve_target",
    "normalize_field_mapping",
    "sanitize_value",
    "map_row",
    "row_from_payload",
    "validate_required",
]
