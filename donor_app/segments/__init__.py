"""
Segment query compiler and definition store.
"""

from .evaluator import build_predicate, evaluate, evaluate_tristate
from .fields import FIELD_REGISTRY, FieldKind, FieldSpec, list_fields, resolve_field
from .query import Combinator, Group, Operator, Rule, parse_query
from .service import Page, SegmentDefinitionService, SegmentFilters
from .sql import compile_filter, render_sql, segment_clause

__all__ = [
    "Combinator",
    "Group",
    "Operator",
    "Rule",
    "parse_query",
    "evaluate",
    "evaluate_tristate",
    "build_predicate",
    "compile_filter",
    "segment_clause",
    "render_sql",
    "FIELD_REGISTRY",
    "FieldKind",
    "FieldSpec",
    "resolve_field",
    "list_fields",
    "Page",
    "SegmentDefinitionService",
    "SegmentFilters",
]
