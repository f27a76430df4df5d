"""
In-memory evaluation of a canonical segment query against a donor object.

Evaluation follows SQL three-valued logic so the result always agrees with
the SQL emitter: a comparison against a missing (``None``) attribute is
*unknown*, combinators use Kleene truth tables, negation of unknown stays
unknown, and an unknown result at the root means "not a member".
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from .fields import FieldKind, FieldSpec
from .query import Combinator, Group, Operator, Rule, to_naive_utc

Truth = Optional[bool]


def evaluate(group: Group, donor: Any, *, now: datetime | None = None) -> bool:
    """Return True when ``donor`` is a member of the segment described by ``group``."""
    return evaluate_tristate(group, donor, now=now) is True


def build_predicate(group: Group, *, now: datetime | None = None) -> Callable[[Any], bool]:
    """Bind ``group`` and a fixed clock into a reusable donor predicate."""
    reference = now or datetime.now(timezone.utc)

    def predicate(donor: Any) -> bool:
        return evaluate(group, donor, now=reference)

    return predicate


def evaluate_tristate(node: Group | Rule, donor: Any, *, now: datetime | None = None) -> Truth:
    """Evaluate ``node`` returning True, False or None (unknown)."""
    reference = now or datetime.now(timezone.utc)
    if isinstance(node, Rule):
        return _evaluate_rule(node, donor, reference)

    results = [evaluate_tristate(child, donor, now=reference) for child in node.rules]
    if node.combinator is Combinator.AND:
        combined = _kleene_and(results)
    else:
        combined = _kleene_or(results)
    if node.negate:
        return None if combined is None else not combined
    return combined


def _kleene_and(results: list[Truth]) -> Truth:
    if any(result is False for result in results):
        return False
    if any(result is None for result in results):
        return None
    return True


def _kleene_or(results: list[Truth]) -> Truth:
    if any(result is True for result in results):
        return True
    if any(result is None for result in results):
        return None
    return False


def _field_value(spec: FieldSpec, donor: Any) -> Any:
    value = getattr(donor, spec.attribute, None)
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        value = value.value
    kind = spec.kind
    if kind is FieldKind.DECIMAL and not isinstance(value, Decimal):
        return Decimal(str(value))
    if kind is FieldKind.DATETIME and isinstance(value, datetime):
        return to_naive_utc(value)
    if kind is FieldKind.DATE and isinstance(value, datetime):
        return value.date()
    if kind is FieldKind.BOOLEAN:
        return bool(value)
    return value


def relative_threshold(spec: FieldSpec, days: int, now: datetime) -> date | datetime:
    """Cut-off for ``in_last_days``/``not_in_last_days`` on ``spec``."""
    moment = to_naive_utc(now) - timedelta(days=days)
    if spec.kind is FieldKind.DATE:
        return moment.date()
    return moment


def _evaluate_rule(rule: Rule, donor: Any, now: datetime) -> Truth:
    value = _field_value(rule.field, donor)
    operator = rule.operator

    if operator is Operator.IS_NULL:
        return value is None
    if operator is Operator.IS_NOT_NULL:
        return value is not None
    if value is None:
        return None

    expected = rule.value
    if operator is Operator.EQUALS:
        return value == expected
    if operator is Operator.NOT_EQUALS:
        return value != expected
    if operator is Operator.GREATER_THAN:
        return value > expected
    if operator is Operator.LESS_THAN:
        return value < expected
    if operator is Operator.GREATER_THAN_OR_EQUAL:
        return value >= expected
    if operator is Operator.LESS_THAN_OR_EQUAL:
        return value <= expected
    if operator is Operator.CONTAINS:
        return expected.lower() in str(value).lower()
    if operator is Operator.NOT_CONTAINS:
        return expected.lower() not in str(value).lower()
    if operator is Operator.IN:
        return value in expected
    if operator is Operator.NOT_IN:
        return value not in expected
    if operator is Operator.BETWEEN:
        low, high = expected
        return low <= value <= high
    if operator is Operator.IN_LAST_DAYS:
        return value >= relative_threshold(rule.field, expected, now)
    if operator is Operator.NOT_IN_LAST_DAYS:
        return value < relative_threshold(rule.field, expected, now)
    raise AssertionError(f"Unhandled operator {operator}")  # pragma: no cover


__all__ = ["evaluate", "evaluate_tristate", "build_predicate", "relative_threshold"]
