# donor_app/models/segment.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db, new_uuid


class SegmentDefinition(BaseModel):
    """A named, persisted donor filter with a cached match count."""

    __tablename__ = "segment_definitions"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    filter_query: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    sql_query: Mapped[str | None] = mapped_column(
        db.Text,
        nullable=True,
        comment="Rendered WHERE fragment cached at the last calculation.",
    )
    estimated_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_calculated: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    is_auto_updated: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    tags: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)

    def __repr__(self) -> str:
        return f"<SegmentDefinition {self.name!r} count={self.estimated_count}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "filterQuery": self.filter_query,
            "sqlQuery": self.sql_query,
            "estimatedCount": self.estimated_count,
            "lastCalculated": self.last_calculated.isoformat() if self.last_calculated else None,
            "isAutoUpdated": self.is_auto_updated,
            "tags": list(self.tags or []),
            "createdBy": self.created_by,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
