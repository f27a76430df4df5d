"""
Canonical segment query tree.

``parse_query`` turns the JSON payload stored on segment definitions into an
immutable ``Group``/``Rule`` tree with values already coerced to each field's
kind. The in-memory evaluator and the SQL emitter both consume this tree, so
they never re-interpret raw payloads independently.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Union

from donor_app.exceptions import MalformedValueError, UnsupportedOperatorError

from .fields import FieldKind, FieldSpec, resolve_field


class Operator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    IN_LAST_DAYS = "in_last_days"
    NOT_IN_LAST_DAYS = "not_in_last_days"


class Combinator(str, enum.Enum):
    AND = "and"
    OR = "or"


COMPARISON_OPERATORS = frozenset(
    {
        Operator.GREATER_THAN,
        Operator.LESS_THAN,
        Operator.GREATER_THAN_OR_EQUAL,
        Operator.LESS_THAN_OR_EQUAL,
    }
)
NULL_OPERATORS = frozenset({Operator.IS_NULL, Operator.IS_NOT_NULL})
SET_OPERATORS = frozenset({Operator.IN, Operator.NOT_IN})
TEXT_OPERATORS = frozenset({Operator.CONTAINS, Operator.NOT_CONTAINS})
RELATIVE_DATE_OPERATORS = frozenset({Operator.IN_LAST_DAYS, Operator.NOT_IN_LAST_DAYS})
_BASE_OPERATORS = frozenset({Operator.EQUALS, Operator.NOT_EQUALS}) | SET_OPERATORS | NULL_OPERATORS


def operators_for(spec: FieldSpec) -> tuple[Operator, ...]:
    """Operators applicable to ``spec`` in declaration order."""
    allowed = set(_BASE_OPERATORS)
    if spec.kind is FieldKind.STRING:
        allowed |= TEXT_OPERATORS
    if spec.is_ordered:
        allowed |= COMPARISON_OPERATORS | {Operator.BETWEEN}
    if spec.is_temporal:
        allowed |= RELATIVE_DATE_OPERATORS
    return tuple(operator for operator in Operator if operator in allowed)


@dataclass(frozen=True)
class Rule:
    field: FieldSpec
    operator: Operator
    value: Any = None
    rule_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"field": self.field.name, "operator": self.operator.value}
        if self.rule_id:
            payload["id"] = self.rule_id
        if self.operator not in NULL_OPERATORS:
            payload["value"] = _serialize_value(self.value)
        return payload


@dataclass(frozen=True)
class Group:
    combinator: Combinator
    rules: tuple["Node", ...] = field(default_factory=tuple)
    negate: bool = False
    group_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "combinator": self.combinator.value,
            "rules": [child.to_dict() for child in self.rules],
        }
        if self.group_id:
            payload["id"] = self.group_id
        if self.negate:
            payload["not"] = True
        return payload

    def iter_rules(self):
        for child in self.rules:
            if isinstance(child, Group):
                yield from child.iter_rules()
            else:
                yield child


Node = Union[Rule, Group]


def parse_query(payload: Any) -> Group:
    """
    Validate a raw query payload and return its canonical tree.

    Raises:
        UnknownFieldError: a rule references a field outside the allow-list.
        UnsupportedOperatorError: an operator is unknown or not valid for the field.
        MalformedValueError: the payload shape or a rule value is invalid.
    """
    if isinstance(payload, Group):
        return payload
    return _parse_group(payload, path="$")


def _parse_group(payload: Any, *, path: str) -> Group:
    if not isinstance(payload, Mapping):
        raise MalformedValueError(f"Query group at {path} must be an object.")
    raw_combinator = payload.get("combinator", "and")
    try:
        combinator = Combinator(str(raw_combinator).lower())
    except ValueError as exc:
        raise MalformedValueError(f"Unknown combinator '{raw_combinator}' at {path}.") from exc

    raw_rules = payload.get("rules", [])
    if not isinstance(raw_rules, (list, tuple)):
        raise MalformedValueError(f"Query group rules at {path} must be a list.")

    children: list[Node] = []
    for index, child in enumerate(raw_rules):
        child_path = f"{path}.rules[{index}]"
        if isinstance(child, Mapping) and "rules" in child:
            children.append(_parse_group(child, path=child_path))
        else:
            children.append(_parse_rule(child, path=child_path))

    negate = payload.get("not", False)
    if not isinstance(negate, bool):
        raise MalformedValueError(f"'not' at {path} must be a boolean.")
    group_id = payload.get("id")
    return Group(
        combinator=combinator,
        rules=tuple(children),
        negate=negate,
        group_id=str(group_id) if group_id is not None else None,
    )


def _parse_rule(payload: Any, *, path: str) -> Rule:
    if not isinstance(payload, Mapping):
        raise MalformedValueError(f"Query rule at {path} must be an object.")
    spec = resolve_field(payload.get("field"))

    raw_operator = payload.get("operator")
    try:
        operator = Operator(raw_operator)
    except ValueError as exc:
        raise UnsupportedOperatorError(str(raw_operator)) from exc
    if operator not in operators_for(spec):
        raise UnsupportedOperatorError(operator.value, field=spec.name)

    rule_id = payload.get("id")
    value = coerce_rule_value(spec, operator, payload.get("value"))
    return Rule(field=spec, operator=operator, value=value, rule_id=str(rule_id) if rule_id is not None else None)


def coerce_rule_value(spec: FieldSpec, operator: Operator, raw: Any) -> Any:
    """Coerce ``raw`` into the typed value ``operator`` expects for ``spec``."""
    if operator in NULL_OPERATORS:
        return None

    if operator in RELATIVE_DATE_OPERATORS:
        if isinstance(raw, bool):
            raise _malformed(spec, operator, "day count must be an integer")
        try:
            days = int(raw)
        except (TypeError, ValueError) as exc:
            raise _malformed(spec, operator, "day count must be an integer") from exc
        if days < 0 or (isinstance(raw, float) and not raw.is_integer()):
            raise _malformed(spec, operator, "day count must be a non-negative integer")
        return days

    if operator in SET_OPERATORS:
        if not isinstance(raw, (list, tuple)) or not raw:
            raise _malformed(spec, operator, "value must be a non-empty list")
        return tuple(_coerce_scalar(spec, operator, item) for item in raw)

    if operator is Operator.BETWEEN:
        if not isinstance(raw, (list, tuple)) or len(raw) != 2:
            raise _malformed(spec, operator, "between requires a two-element [low, high] pair")
        low = _coerce_scalar(spec, operator, raw[0])
        high = _coerce_scalar(spec, operator, raw[1])
        if low > high:
            raise _malformed(spec, operator, "between bounds must be ordered low to high")
        return (low, high)

    if operator in TEXT_OPERATORS:
        if raw is None or isinstance(raw, (list, tuple, dict, bool)):
            raise _malformed(spec, operator, "value must be text")
        text = str(raw)
        if not text:
            raise _malformed(spec, operator, "value must not be empty")
        return text

    return _coerce_scalar(spec, operator, raw)


def _coerce_scalar(spec: FieldSpec, operator: Operator, raw: Any) -> Any:
    if raw is None or isinstance(raw, (list, tuple, dict)):
        raise _malformed(spec, operator, "value must be a single non-null value")

    kind = spec.kind
    if kind is FieldKind.STRING:
        if isinstance(raw, bool):
            raise _malformed(spec, operator, "value must be text")
        return str(raw)
    if kind is FieldKind.ENUM:
        text = str(raw).strip().lower()
        if text not in spec.choices:
            raise _malformed(spec, operator, f"'{raw}' is not one of {', '.join(spec.choices)}")
        return text
    if kind is FieldKind.BOOLEAN:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in {"true", "1", "yes"}:
            return True
        if text in {"false", "0", "no"}:
            return False
        raise _malformed(spec, operator, "value must be a boolean")
    if kind is FieldKind.INTEGER:
        if isinstance(raw, bool):
            raise _malformed(spec, operator, "value must be an integer")
        try:
            number = Decimal(str(raw).strip())
        except InvalidOperation as exc:
            raise _malformed(spec, operator, "value must be an integer") from exc
        if not number.is_finite() or number != number.to_integral_value():
            raise _malformed(spec, operator, "value must be an integer")
        return int(number)
    if kind is FieldKind.DECIMAL:
        if isinstance(raw, bool):
            raise _malformed(spec, operator, "value must be a number")
        try:
            number = Decimal(str(raw).strip())
        except InvalidOperation as exc:
            raise _malformed(spec, operator, "value must be a number") from exc
        if not number.is_finite():
            raise _malformed(spec, operator, "value must be a finite number")
        return number
    if kind is FieldKind.DATE:
        return _coerce_date(spec, operator, raw)
    if kind is FieldKind.DATETIME:
        return _coerce_datetime(spec, operator, raw)
    raise _malformed(spec, operator, f"unsupported field kind {kind}")  # pragma: no cover


def _coerce_date(spec: FieldSpec, operator: Operator, raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise _malformed(spec, operator, "value must be an ISO date (YYYY-MM-DD)") from exc


def _coerce_datetime(spec: FieldSpec, operator: Operator, raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, date):
        value = datetime(raw.year, raw.month, raw.day)
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise _malformed(spec, operator, "value must be an ISO timestamp") from exc
    return to_naive_utc(value)


def to_naive_utc(value: datetime) -> datetime:
    """Drop timezone info after converting to UTC; stored timestamps are UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _malformed(spec: FieldSpec, operator: Operator, reason: str) -> MalformedValueError:
    return MalformedValueError(
        f"Invalid value for {spec.name} {operator.value}: {reason}",
        field=spec.name,
        operator=operator.value,
    )


def _serialize_value(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_serialize_value(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


__all__ = [
    "Operator",
    "Combinator",
    "Rule",
    "Group",
    "Node",
    "parse_query",
    "coerce_rule_value",
    "operators_for",
    "to_naive_utc",
]
