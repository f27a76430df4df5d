"""
SQLAlchemy models for donor import jobs.

A job row is the single source of truth for an import's lifecycle. The
orchestrator mutates counters and the bounded error/warning tails after
every batch; status changes go through guarded updates in
``ImportJobService`` so concurrent cancellation is never overwritten.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db, new_uuid


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({ImportJobStatus.PENDING, ImportJobStatus.PROCESSING})


class DedupStrategy(str, enum.Enum):
    """How rows matching an existing donor are handled."""

    SKIP = "skip"
    UPDATE = "update"
    CREATE_NEW = "create_new"


class ImportJob(BaseModel):
    """Metadata, progress and outcome of a single donor file import."""

    __tablename__ = "import_jobs"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_size: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    file_type: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    target_entity: Mapped[str] = mapped_column(db.String(50), nullable=False, default="donors")
    field_mapping: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    dedup_strategy: Mapped[DedupStrategy] = mapped_column(
        Enum(DedupStrategy, name="dedup_strategy_enum", values_callable=_enum_values),
        nullable=False,
        default=DedupStrategy.SKIP,
    )
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum", values_callable=_enum_values),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    batch_size: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    successful_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    batches_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_batches: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    errors: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    warnings: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    summary_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    ingest_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored parameters for the worker (file_path, keep_file).",
    )
    created_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_import_jobs_owner_created", "created_by", "created_at"),)

    def __repr__(self) -> str:
        return f"<ImportJob {self.id} status={self.status}>"

    @property
    def is_terminal(self) -> bool:
        return ImportJobStatus(self.status).is_terminal

    @property
    def counters(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows or 0,
            "processed_rows": self.processed_rows or 0,
            "successful_rows": self.successful_rows or 0,
            "created_rows": self.created_rows or 0,
            "updated_rows": self.updated_rows or 0,
            "skipped_rows": self.skipped_rows or 0,
            "error_rows": self.error_rows or 0,
        }

    def to_dict(self) -> dict:
        status = ImportJobStatus(self.status)
        strategy = DedupStrategy(self.dedup_strategy)
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "fileType": self.file_type,
            "targetEntity": self.target_entity,
            "fieldMapping": dict(self.field_mapping or {}),
            "dedupStrategy": strategy.value,
            "status": status.value,
            "batchSize": self.batch_size,
            "totalRows": self.total_rows or 0,
            "processedRows": self.processed_rows or 0,
            "successfulRows": self.successful_rows or 0,
            "createdRows": self.created_rows or 0,
            "updatedRows": self.updated_rows or 0,
            "skippedRows": self.skipped_rows or 0,
            "errorRows": self.error_rows or 0,
            "batchesProcessed": self.batches_processed or 0,
            "failedBatches": self.failed_batches or 0,
            "errors": list(self.errors or []),
            "warnings": list(self.warnings or []),
            "summary": self.summary_json,
            "errorSummary": self.error_summary,
            "cancelReason": self.cancel_reason,
            "notes": self.notes,
            "createdBy": self.created_by,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
