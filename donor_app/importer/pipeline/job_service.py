"""
Job record API for donor imports.

Every status change is a guarded ``UPDATE ... WHERE status IN (...)`` so a
cancel that lands while a batch is in flight is never overwritten by a later
progress write or by completion. The job row is the only source of truth for
an import's state.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.orm import Session

from donor_app.exceptions import InvalidTransitionError, JobNotFoundError, ValidationError
from donor_app.importer.mapping import normalize_field_mapping
from donor_app.models import ACTIVE_STATUSES, DedupStrategy, ImportJob, ImportJobStatus, db
from donor_app.services.audit_service import AuditService

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
STATUS_ERROR_TAIL = 100
STATUS_WARNING_TAIL = 50
ERROR_REPORT_CSV_HEADERS = ("Row Number", "Error Message", "Original Data")

# Fields callers may change once a job exists; notes stay editable after it ends.
_MUTABLE_FIELDS = frozenset({"name", "description", "notes", "batch_size", "ingest_params_json"})
_TERMINAL_MUTABLE_FIELDS = frozenset({"notes"})

_PROGRESS_FIELDS = (
    "total_rows",
    "processed_rows",
    "successful_rows",
    "created_rows",
    "updated_rows",
    "skipped_rows",
    "error_rows",
    "batches_processed",
    "failed_batches",
    "errors",
    "warnings",
)


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def resolve_dedup_strategy(value: str | DedupStrategy | None) -> DedupStrategy:
    if value is None or value == "":
        return DedupStrategy.SKIP
    try:
        return DedupStrategy(str(getattr(value, "value", value)).strip().lower())
    except ValueError as exc:
        choices = ", ".join(member.value for member in DedupStrategy)
        raise ValidationError(
            f"Unknown dedup strategy '{value}'. Expected one of: {choices}.", field="dedup_strategy"
        ) from exc


class ImportJobService:
    """Create, query and transition import jobs."""

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
    # Records
    # ------------------------------------------------------------------

    def create_job(
        self,
        *,
        file_name: str,
        field_mapping: Mapping[str, Any],
        dedup_strategy: str | DedupStrategy | None = None,
        name: str | None = None,
        description: str | None = None,
        file_size: int | None = None,
        file_type: str | None = None,
        batch_size: int | None = None,
        created_by: str | None = None,
        ingest_params: Mapping[str, Any] | None = None,
    ) -> ImportJob:
        if not file_name:
            raise ValidationError("A file name is required.", field="file_name")
        try:
            mapping = normalize_field_mapping(field_mapping)
        except ValueError as exc:
            raise ValidationError(str(exc), field="field_mapping") from exc
        if not mapping:
            raise ValidationError("Field mapping must map at least one column.", field="field_mapping")
        if batch_size is not None and int(batch_size) < 1:
            raise ValidationError("Batch size must be at least 1.", field="batch_size")

        job = ImportJob(
            name=(name or "").strip() or f"Import: {file_name}",
            description=description or f"Import donor data from {file_name}",
            file_name=file_name,
            file_size=file_size,
            file_type=file_type or (file_name.rsplit(".", 1)[-1].lower() if "." in file_name else None),
            target_entity="donors",
            field_mapping=mapping,
            dedup_strategy=resolve_dedup_strategy(dedup_strategy),
            status=ImportJobStatus.PENDING,
            batch_size=int(batch_size) if batch_size is not None else None,
            created_by=created_by,
            ingest_params_json=dict(ingest_params) if ingest_params else None,
            errors=[],
            warnings=[],
        )
        self.session.add(job)
        self.session.commit()
        logger.info(
            "Import job created",
            extra={"import_job_id": job.id, "import_file_name": file_name, "import_strategy": job.dedup_strategy},
        )
        return job

    def find_job(self, job_id: str) -> ImportJob | None:
        return self.session.get(ImportJob, job_id)

    def get_job(self, job_id: str) -> ImportJob:
        job = self.find_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, owner: str | None = None, limit: int = DEFAULT_LIST_LIMIT) -> list[ImportJob]:
        query = self.session.query(ImportJob)
        if owner is not None:
            query = query.filter(ImportJob.created_by == owner)
        return query.order_by(ImportJob.created_at.desc()).limit(max(1, int(limit))).all()

    def update_job(self, job_id: str, **partial: Any) -> ImportJob:
        """
        Apply a partial update of descriptive fields.

        Terminal jobs only accept annotation (``notes``); status and counters
        are never writable here.
        """
        job = self.get_job(job_id)
        unknown = set(partial) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unsupported job fields: {', '.join(sorted(unknown))}")
        if job.is_terminal and set(partial) - _TERMINAL_MUTABLE_FIELDS:
            status = ImportJobStatus(job.status).value
            raise InvalidTransitionError(job.id, status, status)
        for key, value in partial.items():
            setattr(job, key, value)
        self.session.commit()
        return job

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start_job(self, job_id: str) -> ImportJob:
        job = self.get_job(job_id)
        changed = self._transition(
            job_id,
            (ImportJobStatus.PENDING,),
            {"status": ImportJobStatus.PROCESSING, "started_at": self._clock()},
        )
        if not changed:
            self._raise_transition(job, ImportJobStatus.PROCESSING)
        self.audit.record(
            "import_started",
            entity_type="import_job",
            entity_id=job.id,
            user_id=job.created_by,
            metadata={"fileName": job.file_name, "fileSize": job.file_size, "targetEntity": job.target_entity},
        )
        self.session.commit()
        logger.info("Import job started", extra={"import_job_id": job.id})
        return job

    def cancel_job(self, job_id: str, reason: str | None = None, *, user_id: str | None = None) -> ImportJob:
        job = self.get_job(job_id)
        reason = (reason or "").strip() or "Cancelled by user"
        now = self._clock()
        errors = list(job.errors or [])
        errors.append({"error": f"Job cancelled: {reason}", "timestamp": now.isoformat()})
        changed = self._transition(
            job_id,
            ACTIVE_STATUSES,
            {
                "status": ImportJobStatus.CANCELLED,
                "cancel_reason": reason,
                "errors": errors,
                "completed_at": now,
            },
        )
        if not changed:
            self._raise_transition(job, ImportJobStatus.CANCELLED)
        self.audit.record(
            "import_cancelled",
            entity_type="import_job",
            entity_id=job.id,
            user_id=user_id or job.created_by,
            metadata={
                "fileName": job.file_name,
                "reason": reason,
                "processedRows": job.processed_rows,
                "totalRows": job.total_rows,
            },
        )
        self.session.commit()
        logger.info("Import job cancelled", extra={"import_job_id": job.id, "import_cancel_reason": reason})
        return job

    def complete_job(self, job_id: str, summary: Mapping[str, Any] | None = None) -> bool:
        """Move a processing job to completed; ``False`` when it already left processing."""
        changed = self._transition(
            job_id,
            (ImportJobStatus.PROCESSING,),
            {
                "status": ImportJobStatus.COMPLETED,
                "completed_at": self._clock(),
                "summary_json": dict(summary or {}),
            },
        )
        self.session.commit()
        return changed

    def fail_job(self, job_id: str, message: str, *, details: Mapping[str, Any] | None = None) -> bool:
        """Move any non-terminal job to failed, appending the failure to its error tail."""
        job = self.get_job(job_id)
        now = self._clock()
        errors = list(job.errors or [])
        entry: dict[str, Any] = {"error": message, "timestamp": now.isoformat()}
        if details:
            entry["details"] = dict(details)
        errors.append(entry)
        changed = self._transition(
            job_id,
            ACTIVE_STATUSES,
            {
                "status": ImportJobStatus.FAILED,
                "completed_at": now,
                "error_summary": message,
                "errors": errors,
            },
        )
        self.session.commit()
        return changed

    def is_cancel_requested(self, job_id: str) -> bool:
        """Read the stored status directly, bypassing any cached instance."""
        status = self.session.query(ImportJob.status).filter(ImportJob.id == job_id).scalar()
        if status is None:
            raise JobNotFoundError(job_id)
        return ImportJobStatus(status) is ImportJobStatus.CANCELLED

    def record_progress(self, job_id: str, **progress: Any) -> bool:
        """
        Stage counters and error/warning tails for a processing job.

        The caller commits, so progress lands in the same unit of work as the
        batch it describes. Returns ``False`` when the job is no longer
        processing. A job cancelled mid-batch still receives its row counters
        but keeps its error and warning tails.
        """
        unknown = set(progress) - set(_PROGRESS_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported progress fields: {', '.join(sorted(unknown))}")
        if self._transition(job_id, (ImportJobStatus.PROCESSING,), progress):
            return True
        counters = {key: value for key, value in progress.items() if key not in ("errors", "warnings")}
        if counters:
            self._transition(job_id, (ImportJobStatus.CANCELLED,), counters)
        return False

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def progress_snapshot(self, job: ImportJob, *, now: datetime | None = None) -> dict[str, Any]:
        """Status payload: job fields plus percent, ETA and trimmed error/warning tails."""
        payload = job.to_dict()
        total = job.total_rows or 0
        processed = job.processed_rows or 0
        payload["progress"] = round(processed / total * 100) if total > 0 else 0

        remaining_seconds = None
        started_at = _as_aware(job.started_at)
        if started_at is not None and processed > 0 and ImportJobStatus(job.status) is ImportJobStatus.PROCESSING:
            elapsed = ((now or self._clock()) - started_at).total_seconds()
            if elapsed > 0:
                rate = processed / elapsed
                remaining_seconds = round(max(total - processed, 0) / rate)
        payload["estimatedTimeRemaining"] = remaining_seconds
        payload["errors"] = payload["errors"][-STATUS_ERROR_TAIL:]
        payload["warnings"] = payload["warnings"][-STATUS_WARNING_TAIL:]
        return payload

    def error_report(self, job: ImportJob) -> dict[str, Any]:
        """Full error and warning tails with the job's counters."""
        payload = job.to_dict()
        errors = payload["errors"]
        warnings = payload["warnings"]
        return {
            "jobInfo": {
                key: payload[key] for key in ("id", "name", "fileName", "status", "createdAt", "completedAt")
            },
            "summary": {
                "totalRows": payload["totalRows"],
                "processedRows": payload["processedRows"],
                "successfulRows": payload["successfulRows"],
                "errorRows": payload["errorRows"],
                "skippedRows": payload["skippedRows"],
                "errorCount": len(errors),
                "warningCount": len(warnings),
            },
            "errors": errors,
            "warnings": warnings,
            "fieldMapping": payload["fieldMapping"],
            "dedupStrategy": payload["dedupStrategy"],
        }

    def error_report_csv(self, job: ImportJob) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(ERROR_REPORT_CSV_HEADERS)
        for entry in job.errors or []:
            writer.writerow(
                [entry.get("row", ""), entry.get("error", ""), json.dumps(entry.get("data") or {}, sort_keys=True)]
            )
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(self, job_id: str, allowed: Iterable[ImportJobStatus], values: Mapping[str, Any]) -> bool:
        updated = (
            self.session.query(ImportJob)
            .filter(ImportJob.id == job_id, ImportJob.status.in_(list(allowed)))
            .update(dict(values), synchronize_session="fetch")
        )
        return bool(updated)

    def _raise_transition(self, job: ImportJob, target: ImportJobStatus) -> None:
        self.session.refresh(job)
        raise InvalidTransitionError(job.id, ImportJobStatus(job.status).value, target.value)


__all__ = ["ImportJobService", "resolve_dedup_strategy"]
