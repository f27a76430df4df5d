"""
SQLAlchemy backend for canonical segment queries.

Operator semantics mirror ``evaluator``: NULL comparisons are left to SQL
three-valued logic, ``contains`` is a case-insensitive, escaped LIKE, and
relative date operators use the same cut-off helper.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import and_, false, func, not_, or_, select, true
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import CompileError
from sqlalchemy.sql.elements import ColumnElement

from donor_app.models.donor import Donor

from .evaluator import relative_threshold
from .query import Combinator, Group, Operator, Rule

LIKE_ESCAPE = "\\"


def escape_like(text: str) -> str:
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def compile_filter(group: Group, *, now: datetime | None = None) -> ColumnElement:
    """Translate ``group`` into a boolean clause over the ``donors`` table."""
    reference = now or datetime.now(timezone.utc)
    return _compile_node(group, reference)


def segment_clause(group: Group, *, now: datetime | None = None) -> ColumnElement:
    """Filter clause restricted to active donors."""
    return and_(Donor.is_active.is_(True), compile_filter(group, now=now))


def render_sql(group: Group, *, dialect: Dialect | None = None, now: datetime | None = None) -> str:
    """
    Render ``SELECT ... FROM donors WHERE ...`` for the active-donor filter.

    Literal values are inlined when the dialect can render them; otherwise the
    fragment keeps bound parameter placeholders.
    """
    statement = select(Donor.__table__).where(segment_clause(group, now=now))
    try:
        compiled = statement.compile(dialect=dialect, compile_kwargs={"literal_binds": True})
    except (CompileError, NotImplementedError):
        compiled = statement.compile(dialect=dialect)
    return str(compiled)


def _compile_node(node: Group | Rule, now: datetime) -> ColumnElement:
    if isinstance(node, Rule):
        return _compile_rule(node, now)

    clauses = [_compile_node(child, now) for child in node.rules]
    if node.combinator is Combinator.AND:
        combined = and_(*clauses) if clauses else true()
    else:
        combined = or_(*clauses) if clauses else false()
    if node.negate:
        return not_(combined)
    return combined


def _compile_rule(rule: Rule, now: datetime) -> ColumnElement:
    column = getattr(Donor, rule.field.attribute)
    operator = rule.operator
    value = rule.value

    if operator is Operator.IS_NULL:
        return column.is_(None)
    if operator is Operator.IS_NOT_NULL:
        return column.is_not(None)
    if operator is Operator.EQUALS:
        return column == value
    if operator is Operator.NOT_EQUALS:
        return column != value
    if operator is Operator.GREATER_THAN:
        return column > value
    if operator is Operator.LESS_THAN:
        return column < value
    if operator is Operator.GREATER_THAN_OR_EQUAL:
        return column >= value
    if operator is Operator.LESS_THAN_OR_EQUAL:
        return column <= value
    if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        pattern = f"%{escape_like(value.lower())}%"
        clause = func.lower(column).like(pattern, escape=LIKE_ESCAPE)
        return clause if operator is Operator.CONTAINS else not_(clause)
    if operator is Operator.IN:
        return column.in_(list(value))
    if operator is Operator.NOT_IN:
        return column.not_in(list(value))
    if operator is Operator.BETWEEN:
        low, high = value
        return column.between(low, high)
    if operator is Operator.IN_LAST_DAYS:
        return column >= relative_threshold(rule.field, value, now)
    if operator is Operator.NOT_IN_LAST_DAYS:
        return column < relative_threshold(rule.field, value, now)
    raise AssertionError(f"Unhandled operator {operator}")  # pragma: no cover


__all__ = ["compile_filter", "segment_clause", "render_sql", "escape_like"]
