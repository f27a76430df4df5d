"""
Segment definition store.

Definitions persist the canonical query JSON together with a cached SQL
fragment, an estimated member count and the time it was calculated. The
cache is recalculated only when a definition is created, when its query
changes, or on explicit refresh; donor writes never touch it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from donor_app.exceptions import MalformedValueError, SegmentNotFoundError
from donor_app.models import Donor, SegmentDefinition, db
from donor_app.services.audit_service import AuditService

from .evaluator import build_predicate
from .query import Group, parse_query
from .sql import render_sql, segment_clause

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 200

_UPDATABLE_FIELDS = ("name", "description", "filter_query", "is_auto_updated", "tags")


def _coerce_positive_int(value: Any, *, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


@dataclass(frozen=True)
class SegmentFilters:
    """Listing options for segment definitions."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    search: str | None = None
    created_by: str | None = None
    tag: str | None = None
    include_inactive: bool = False

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        search: str | None = None,
        created_by: str | None = None,
        tag: str | None = None,
        include_inactive: bool = False,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> "SegmentFilters":
        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), max_page_size),
            search=resolved_search,
            created_by=created_by or None,
            tag=tag or None,
            include_inactive=bool(include_inactive),
        )


@dataclass(slots=True)
class Page:
    """One page of a larger result set."""

    items: list[Any]
    total: int
    page: int
    page_size: int
    total_pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = (self.total + self.page_size - 1) // self.page_size if self.total else 0


class SegmentDefinitionService:
    """Create, query and refresh persisted segment definitions."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        audit: AuditService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.audit = audit or AuditService(self.session)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def create_definition(
        self,
        *,
        name: str,
        filter_query: Mapping[str, Any] | Group,
        description: str | None = None,
        tags: Iterable[str] | None = None,
        is_auto_updated: bool = False,
        created_by: str | None = None,
    ) -> SegmentDefinition:
        if not name or not str(name).strip():
            raise MalformedValueError("Segment name is required.")
        group = parse_query(filter_query)
        definition = SegmentDefinition(
            name=str(name).strip(),
            description=description,
            filter_query=group.to_dict(),
            tags=list(tags or []),
            is_auto_updated=bool(is_auto_updated),
            created_by=created_by,
            is_active=True,
        )
        self._recalculate(definition, group)
        self.session.add(definition)
        self.session.flush()
        self.audit.record(
            "segment_created",
            entity_type="segment_definition",
            entity_id=definition.id,
            user_id=created_by,
            metadata={"name": definition.name, "estimated_count": definition.estimated_count},
        )
        self.session.commit()
        logger.info(
            "Segment definition created",
            extra={"segment_id": definition.id, "segment_estimated_count": definition.estimated_count},
        )
        return definition

    def update_definition(self, segment_id: str, **changes: Any) -> SegmentDefinition:
        definition = self.get_definition(segment_id)
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise MalformedValueError(f"Unsupported segment fields: {', '.join(sorted(unknown))}")

        if "name" in changes:
            name = changes["name"]
            if not name or not str(name).strip():
                raise MalformedValueError("Segment name is required.")
            definition.name = str(name).strip()
        if "description" in changes:
            definition.description = changes["description"]
        if "tags" in changes:
            definition.tags = list(changes["tags"] or [])
        if "is_auto_updated" in changes:
            definition.is_auto_updated = bool(changes["is_auto_updated"])
        if "filter_query" in changes:
            if changes["filter_query"] is None:
                raise MalformedValueError("Segment filterQuery cannot be null.")
            group = parse_query(changes["filter_query"])
            definition.filter_query = group.to_dict()
            self._recalculate(definition, group)
        self.session.commit()
        return definition

    def delete_definition(self, segment_id: str) -> SegmentDefinition:
        """Soft delete: the definition is hidden from listings and lookups."""
        definition = self.get_definition(segment_id)
        definition.is_active = False
        self.session.commit()
        return definition

    def get_definition(self, segment_id: str, *, include_inactive: bool = False) -> SegmentDefinition:
        definition = self.session.get(SegmentDefinition, segment_id)
        if definition is None or (not definition.is_active and not include_inactive):
            raise SegmentNotFoundError(segment_id)
        return definition

    def list_definitions(self, filters: SegmentFilters | None = None) -> Page:
        filters = filters or SegmentFilters()
        query = self.session.query(SegmentDefinition)
        if not filters.include_inactive:
            query = query.filter(SegmentDefinition.is_active.is_(True))
        if filters.created_by:
            query = query.filter(SegmentDefinition.created_by == filters.created_by)
        if filters.search:
            pattern = f"%{filters.search.lower()}%"
            query = query.filter(
                or_(
                    func.lower(SegmentDefinition.name).like(pattern),
                    func.lower(func.coalesce(SegmentDefinition.description, "")).like(pattern),
                )
            )
        definitions = query.order_by(SegmentDefinition.created_at.desc(), SegmentDefinition.name).all()
        if filters.tag:
            definitions = [item for item in definitions if filters.tag in (item.tags or [])]

        total = len(definitions)
        start = (filters.page - 1) * filters.page_size
        return Page(
            items=definitions[start : start + filters.page_size],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
        )

    def refresh_definition(self, segment_id: str, *, user_id: str | None = None) -> SegmentDefinition:
        definition = self.get_definition(segment_id)
        previous = definition.estimated_count
        self._recalculate(definition, parse_query(definition.filter_query))
        self.audit.record(
            "segment_refreshed",
            entity_type="segment_definition",
            entity_id=definition.id,
            user_id=user_id,
            metadata={"previous_count": previous, "estimated_count": definition.estimated_count},
        )
        self.session.commit()
        return definition

    def refresh_all(self, *, auto_updated_only: bool = False) -> list[SegmentDefinition]:
        query = self.session.query(SegmentDefinition).filter(SegmentDefinition.is_active.is_(True))
        if auto_updated_only:
            query = query.filter(SegmentDefinition.is_auto_updated.is_(True))
        refreshed = []
        for definition in query.all():
            self._recalculate(definition, parse_query(definition.filter_query))
            refreshed.append(definition)
        self.session.commit()
        return refreshed

    # ------------------------------------------------------------------
    # Donor queries
    # ------------------------------------------------------------------

    def execute_query(
        self,
        filter_query: Mapping[str, Any] | Group,
        *,
        page: int = DEFAULT_PAGE,
        page_size: int = DEFAULT_PAGE_SIZE,
        now: datetime | None = None,
    ) -> Page:
        group = parse_query(filter_query)
        page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        page_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
        query = self.session.query(Donor).filter(segment_clause(group, now=now or self._clock()))
        total = query.count()
        donors = (
            query.order_by(Donor.last_name, Donor.first_name, Donor.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return Page(items=donors, total=total, page=page, page_size=page_size)

    def count_matching(self, filter_query: Mapping[str, Any] | Group, *, now: datetime | None = None) -> int:
        group = parse_query(filter_query)
        return self._count(group, now or self._clock())

    def validate_query(self, filter_query: Any) -> dict[str, Any]:
        """
        Compile an unsaved query without storing it.

        Returns the canonical form, the SQL a definition would cache and the
        current match count. Invalid queries raise ``SegmentQueryError``.
        """
        group = parse_query(filter_query)
        now = self._clock()
        return {
            "filterQuery": group.to_dict(),
            "sqlQuery": render_sql(group, dialect=self.session.get_bind().dialect, now=now),
            "estimatedCount": self._count(group, now),
        }

    def get_definition_donors(
        self,
        segment_id: str,
        *,
        page: int = DEFAULT_PAGE,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        definition = self.get_definition(segment_id)
        return self.execute_query(definition.filter_query, page=page, page_size=page_size)

    def matches(self, definition: SegmentDefinition, donor: Donor, *, now: datetime | None = None) -> bool:
        """In-memory membership test for a single donor."""
        if not donor.is_active:
            return False
        predicate = build_predicate(parse_query(definition.filter_query), now=now or self._clock())
        return predicate(donor)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _count(self, group: Group, now: datetime) -> int:
        return self.session.query(func.count(Donor.id)).filter(segment_clause(group, now=now)).scalar() or 0

    def _recalculate(self, definition: SegmentDefinition, group: Group) -> None:
        now = self._clock()
        definition.sql_query = render_sql(group, dialect=self.session.get_bind().dialect, now=now)
        definition.estimated_count = self._count(group, now)
        definition.last_calculated = now
