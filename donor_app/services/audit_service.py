"""
Audit sink for import and segment lifecycle events.

Writes happen inside a savepoint so a failing audit insert never poisons the
caller's transaction; failures are logged and swallowed.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donor_app.models import AuditLog, db

logger = logging.getLogger(__name__)


class AuditService:
    """Record structured audit events without ever raising to the caller."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def record(
        self,
        action: str,
        *,
        entity_type: str,
        entity_id: str | None = None,
        user_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditLog | None:
        """Stage an audit event; return the entry, or ``None`` if it could not be written."""
        try:
            with self.session.begin_nested():
                entry = AuditLog(
                    action=action,
                    entity_type=entity_type,
                    entity_id=str(entity_id) if entity_id is not None else None,
                    user_id=user_id,
                    metadata_json=dict(metadata or {}),
                )
                self.session.add(entry)
                self.session.flush()
            return entry
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            logger.warning(
                "Failed to write audit event %s for %s %s: %s",
                action,
                entity_type,
                entity_id,
                exc,
                extra={"audit_action": action, "audit_entity_type": entity_type, "audit_entity_id": entity_id},
            )
            return None
