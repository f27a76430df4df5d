"""
Batch import processor for donor files.

``ImportJobProcessor.run`` drives one job from ``pending`` to a terminal
state:

* parse the upload (``ParseError`` fails the job before any row runs),
* split rows into fixed-size batches,
* per row, inside a savepoint: map, validate, detect duplicates and apply the
  job's dedup strategy,
* commit each batch together with the job's counters and bounded
  error/warning tails, then report progress, look for a cancel request and
  yield.

Committed batches are never rolled back. Infrastructure failures
(``OperationalError``/``InterfaceError``) roll back the current batch only,
record every row in it as an error and fail the job once more than the
configured number of batches have failed.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from flask import Flask
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from donor_app.exceptions import (
    CancelledError,
    CatastrophicBatchError,
    DonorAppError,
    InvalidTransitionError,
)
from donor_app.importer.mapping import map_row, validate_required
from donor_app.importer.parsers import TabularFileParser
from donor_app.models import DedupStrategy, ImportJob, ImportJobStatus, db
from donor_app.services.audit_service import AuditService

from .duplicates import Confidence, DuplicateDetector, DuplicateMatch
from .job_service import ImportJobService
from .merge import build_new_donor, merge_into_donor

logger = logging.getLogger(__name__)

INFRASTRUCTURE_ERRORS = (OperationalError, InterfaceError)

ProgressCallback = Callable[[dict[str, Any]], None]


def truncate_message(message: str, limit: int) -> str:
    if limit <= 0 or len(message) <= limit:
        return message
    if limit <= 3:
        return message[:limit]
    return message[: limit - 3] + "..."


class RowAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    ERROR = "error"


def predict_action(strategy: DedupStrategy, matches: Sequence[DuplicateMatch]) -> RowAction:
    """Action the job's dedup strategy takes for a valid row with ``matches``."""
    if strategy is DedupStrategy.CREATE_NEW:
        return RowAction.CREATE
    if matches and strategy is DedupStrategy.SKIP:
        return RowAction.SKIP
    if strategy is DedupStrategy.UPDATE and _first_high_confidence(matches) is not None:
        return RowAction.UPDATE
    return RowAction.CREATE


@dataclass
class BatchOutcome:
    """Row results for one batch before they are committed."""

    successful: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    failed: bool = False


@dataclass
class ImportSummary:
    job_id: str
    status: str
    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    created_rows: int = 0
    updated_rows: int = 0
    skipped_rows: int = 0
    error_rows: int = 0
    batches_processed: int = 0
    failed_batches: int = 0
    completion_time: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.status == ImportJobStatus.CANCELLED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "totalRows": self.total_rows,
            "processedRows": self.processed_rows,
            "successfulRows": self.successful_rows,
            "createdRows": self.created_rows,
            "updatedRows": self.updated_rows,
            "errorRows": self.error_rows,
            "skippedRows": self.skipped_rows,
            "batchesProcessed": self.batches_processed,
            "failedBatches": self.failed_batches,
            "completionTime": self.completion_time,
        }


class _Progress:
    """Running totals plus bounded error/warning tails for one job."""

    def __init__(self, total_rows: int, *, max_errors: int, max_warnings: int, errors=(), warnings=()) -> None:
        self.total_rows = total_rows
        self.processed_rows = 0
        self.successful_rows = 0
        self.created_rows = 0
        self.updated_rows = 0
        self.skipped_rows = 0
        self.error_rows = 0
        self.batches_processed = 0
        self.failed_batches = 0
        self.max_errors = max_errors
        self.max_warnings = max_warnings
        self.errors: deque[dict[str, Any]] = deque(errors, maxlen=max_errors)
        self.warnings: deque[dict[str, Any]] = deque(warnings, maxlen=max_warnings)

    def copy(self) -> "_Progress":
        clone = _Progress(
            self.total_rows,
            max_errors=self.max_errors,
            max_warnings=self.max_warnings,
            errors=self.errors,
            warnings=self.warnings,
        )
        for name in (
            "processed_rows",
            "successful_rows",
            "created_rows",
            "updated_rows",
            "skipped_rows",
            "error_rows",
            "batches_processed",
            "failed_batches",
        ):
            setattr(clone, name, getattr(self, name))
        return clone

    def absorb(self, outcome: BatchOutcome, batch_rows: int) -> None:
        self.processed_rows += batch_rows
        self.successful_rows += outcome.successful
        self.created_rows += outcome.created
        self.updated_rows += outcome.updated
        self.skipped_rows += outcome.skipped
        self.error_rows += len(outcome.errors)
        self.batches_processed += 1
        if outcome.failed:
            self.failed_batches += 1
        self.errors.extend(outcome.errors)
        self.warnings.extend(outcome.warnings)

    def as_job_fields(self) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "successful_rows": self.successful_rows,
            "created_rows": self.created_rows,
            "updated_rows": self.updated_rows,
            "skipped_rows": self.skipped_rows,
            "error_rows": self.error_rows,
            "batches_processed": self.batches_processed,
            "failed_batches": self.failed_batches,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class ImportJobProcessor:
    """Run donor import jobs batch by batch."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        jobs: ImportJobService | None = None,
        detector: DuplicateDetector | None = None,
        parser: TabularFileParser | None = None,
        audit: AuditService | None = None,
        metrics=None,
        batch_size: int = 100,
        max_errors: int = 1000,
        max_warnings: int = 500,
        max_message_length: int = 500,
        max_failed_batches: int = 3,
        yield_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.audit = audit or AuditService(self.session)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.jobs = jobs or ImportJobService(self.session, audit=self.audit, clock=self._clock)
        self.detector = detector or DuplicateDetector(self.session, metrics=metrics)
        self.parser = parser or TabularFileParser()
        self.metrics = metrics
        self.batch_size = max(1, int(batch_size))
        self.max_errors = max_errors
        self.max_warnings = max_warnings
        self.max_message_length = max_message_length
        self.max_failed_batches = max_failed_batches
        self.yield_seconds = yield_seconds
        self._sleep = sleep

    def run(
        self,
        job_id: str,
        content: bytes,
        filename: str,
        *,
        on_batch: ProgressCallback | None = None,
    ) -> ImportSummary:
        """
        Process ``content`` for the pending job ``job_id``.

        Returns the final summary for completed and cancelled jobs. Job-level
        failures mark the job failed and re-raise.
        """
        job = self.jobs.get_job(job_id)
        try:
            self.jobs.start_job(job_id)
        except InvalidTransitionError as exc:
            if exc.current == ImportJobStatus.CANCELLED.value:
                raise CancelledError(f"Import job {job_id} was cancelled before it started.") from exc
            raise

        try:
            rows = self.parser.parse(content, filename)
            progress = _Progress(
                len(rows),
                max_errors=self.max_errors,
                max_warnings=self.max_warnings,
                errors=job.errors or (),
                warnings=job.warnings or (),
            )
            self.jobs.record_progress(job_id, total_rows=progress.total_rows)
            self.session.commit()
            return self._process(job, rows, progress, on_batch)
        except Exception as exc:
            self.fail(job_id, exc)
            raise

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _process(
        self,
        job: ImportJob,
        rows: Sequence[Mapping[str, Any]],
        progress: _Progress,
        on_batch: ProgressCallback | None,
    ) -> ImportSummary:
        job_id = job.id
        field_mapping = dict(job.field_mapping or {})
        strategy = DedupStrategy(job.dedup_strategy)
        batch_size = job.batch_size or self.batch_size
        total_batches = (len(rows) + batch_size - 1) // batch_size

        for batch_index in range(total_batches):
            start = batch_index * batch_size
            batch = rows[start : start + batch_size]
            batch_number = batch_index + 1
            started = time.perf_counter()

            pending = progress.copy()
            try:
                outcome = self._process_batch(batch, start, field_mapping, strategy)
                pending.absorb(outcome, len(batch))
                self.jobs.record_progress(job_id, **pending.as_job_fields())
                self.session.commit()
            except INFRASTRUCTURE_ERRORS as exc:
                self.session.rollback()
                outcome = self._failed_batch(batch, start, exc)
                pending = progress.copy()
                pending.absorb(outcome, len(batch))
                self._record_batch_metrics(outcome, time.perf_counter() - started)
                logger.error(
                    "Import batch failed",
                    extra={
                        "import_job_id": job_id,
                        "import_batch": batch_number,
                        "import_failed_batches": pending.failed_batches,
                        "import_error": str(exc),
                    },
                )
                self.jobs.record_progress(job_id, **pending.as_job_fields())
                self.session.commit()
                if pending.failed_batches > self.max_failed_batches:
                    raise CatastrophicBatchError(
                        f"Batch {batch_number} failed and the failed batch limit "
                        f"({self.max_failed_batches}) was exceeded: {exc}",
                        batch_number=batch_number,
                        failed_batches=pending.failed_batches,
                    ) from exc
            else:
                self._record_batch_metrics(outcome, time.perf_counter() - started)
            progress = pending

            logger.info(
                "Import batch processed",
                extra={
                    "import_job_id": job_id,
                    "import_batch": batch_number,
                    "import_total_batches": total_batches,
                    "import_processed_rows": progress.processed_rows,
                    "import_error_rows": progress.error_rows,
                },
            )
            if on_batch is not None:
                on_batch(self._progress_payload(job_id, batch_number, total_batches, progress))

            if self.jobs.is_cancel_requested(job_id):
                logger.info(
                    "Import job cancellation observed",
                    extra={"import_job_id": job_id, "import_batch": batch_number},
                )
                if self.metrics is not None:
                    self.metrics.record_job(ImportJobStatus.CANCELLED.value)
                return self._summary(job_id, ImportJobStatus.CANCELLED, progress)

            if self.yield_seconds > 0 and batch_number < total_batches:
                self._sleep(self.yield_seconds)

        return self._complete(job, progress)

    def _process_batch(
        self,
        batch: Sequence[Mapping[str, Any]],
        start: int,
        field_mapping: Mapping[str, str],
        strategy: DedupStrategy,
    ) -> BatchOutcome:
        outcome = BatchOutcome()
        for offset, raw in enumerate(batch):
            row_number = start + offset + 1
            try:
                with self.session.begin_nested():
                    self._process_row(raw, row_number, field_mapping, strategy, outcome)
            except INFRASTRUCTURE_ERRORS:
                raise
            except Exception as exc:
                outcome.errors.append(self._row_error(row_number, exc, raw))
        return outcome

    def _process_row(
        self,
        raw: Mapping[str, Any],
        row_number: int,
        field_mapping: Mapping[str, str],
        strategy: DedupStrategy,
        outcome: BatchOutcome,
    ) -> None:
        row = validate_required(map_row(raw, field_mapping, row_number=row_number))
        matches = [] if strategy is DedupStrategy.CREATE_NEW else self.detector.find_duplicates(row)
        action = predict_action(strategy, matches)

        if action is RowAction.SKIP:
            outcome.skipped += 1
            outcome.warnings.append(
                self._row_warning(
                    row_number,
                    f"Duplicate found ({matches[0].confidence.value} confidence), skipped",
                    matches[0],
                )
            )
            return
        if action is RowAction.UPDATE:
            high = _first_high_confidence(matches)
            merge_into_donor(high.donor, row)
            self.session.flush()
            outcome.successful += 1
            outcome.updated += 1
            outcome.warnings.append(self._row_warning(row_number, "Updated existing donor record", high))
            return

        self.session.add(build_new_donor(row))
        self.session.flush()
        outcome.successful += 1
        outcome.created += 1

    def _failed_batch(self, batch: Sequence[Mapping[str, Any]], start: int, exc: Exception) -> BatchOutcome:
        message = f"Batch processing failed: {exc}"
        outcome = BatchOutcome(failed=True)
        for offset, raw in enumerate(batch):
            outcome.errors.append(self._row_error(start + offset + 1, message, raw))
        return outcome

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _complete(self, job: ImportJob, progress: _Progress) -> ImportSummary:
        summary = self._summary(job.id, ImportJobStatus.COMPLETED, progress)
        if not self.jobs.complete_job(job.id, summary.to_dict()):
            self.session.refresh(job)
            summary.status = ImportJobStatus(job.status).value
            return summary

        self.audit.record(
            "import_completed",
            entity_type="import_job",
            entity_id=job.id,
            user_id=job.created_by,
            metadata={
                "fileName": job.file_name,
                "totalRows": progress.total_rows,
                "successfulRows": progress.successful_rows,
                "errorRows": progress.error_rows,
                "skippedRows": progress.skipped_rows,
            },
        )
        self.session.commit()
        if self.metrics is not None:
            self.metrics.record_job(ImportJobStatus.COMPLETED.value)
        logger.info("Import job completed", extra={"import_job_id": job.id, **summary.to_dict()})
        return summary

    def fail(self, job_id: str, exc: Exception) -> None:
        """Mark ``job_id`` failed after ``exc``, auditing the failure once."""
        self.session.rollback()
        message = truncate_message(str(exc) or type(exc).__name__, self.max_message_length)
        details = exc.details if isinstance(exc, DonorAppError) else {"type": type(exc).__name__}
        changed = self.jobs.fail_job(job_id, message, details=details)
        logger.error(
            "Import job failed",
            exc_info=not isinstance(exc, DonorAppError),
            extra={"import_job_id": job_id, "import_error": message},
        )
        if not changed:
            return
        job = self.jobs.get_job(job_id)
        self.audit.record(
            "import_failed",
            entity_type="import_job",
            entity_id=job_id,
            user_id=job.created_by,
            metadata={"fileName": job.file_name, "error": message},
        )
        self.session.commit()
        if self.metrics is not None:
            self.metrics.record_job(ImportJobStatus.FAILED.value)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _row_error(self, row_number: int, error: Exception | str, raw: Mapping[str, Any]) -> dict[str, Any]:
        text = error if isinstance(error, str) else (str(error) or type(error).__name__)
        return {
            "row": row_number,
            "error": truncate_message(text, self.max_message_length),
            "data": dict(raw),
        }

    def _row_warning(self, row_number: int, message: str, match: DuplicateMatch) -> dict[str, Any]:
        return {
            "row": row_number,
            "warning": truncate_message(message, self.max_message_length),
            "duplicateInfo": match.summary(),
        }

    def _record_batch_metrics(self, outcome: BatchOutcome, duration: float) -> None:
        if self.metrics is None:
            return
        self.metrics.record_batch(status="failure" if outcome.failed else "success", duration_seconds=duration)
        self.metrics.record_row("created", outcome.created)
        self.metrics.record_row("updated", outcome.updated)
        self.metrics.record_row("skipped", outcome.skipped)
        self.metrics.record_row("error", len(outcome.errors))

    @staticmethod
    def _progress_payload(job_id: str, batch_number: int, total_batches: int, progress: _Progress) -> dict[str, Any]:
        return {
            "jobId": job_id,
            "batch": batch_number,
            "totalBatches": total_batches,
            "totalRows": progress.total_rows,
            "processedRows": progress.processed_rows,
            "successfulRows": progress.successful_rows,
            "skippedRows": progress.skipped_rows,
            "errorRows": progress.error_rows,
        }

    def _summary(self, job_id: str, status: ImportJobStatus, progress: _Progress) -> ImportSummary:
        return ImportSummary(
            job_id=job_id,
            status=status.value,
            total_rows=progress.total_rows,
            processed_rows=progress.processed_rows,
            successful_rows=progress.successful_rows,
            created_rows=progress.created_rows,
            updated_rows=progress.updated_rows,
            skipped_rows=progress.skipped_rows,
            error_rows=progress.error_rows,
            batches_processed=progress.batches_processed,
            failed_batches=progress.failed_batches,
            completion_time=self._clock().isoformat(),
        )


def _first_high_confidence(matches: Sequence[DuplicateMatch]) -> DuplicateMatch | None:
    for match in matches:
        if match.confidence is Confidence.HIGH:
            return match
    return None


def build_import_processor(app: Flask, *, session: Session | None = None, **overrides: Any) -> ImportJobProcessor:
    """Construct a processor from application config and the importer extension state."""
    config = app.config
    state = app.extensions.get("importer") or {}
    metrics = state.get("metrics")
    session = session or db.session
    options: dict[str, Any] = {
        "detector": DuplicateDetector.from_config(config, session=session, metrics=metrics),
        "metrics": metrics,
        "batch_size": config.get("IMPORTER_BATCH_SIZE", 100),
        "max_errors": config.get("IMPORTER_MAX_ERRORS", 1000),
        "max_warnings": config.get("IMPORTER_MAX_WARNINGS", 500),
        "max_message_length": config.get("IMPORTER_MAX_MESSAGE_LENGTH", 500),
        "max_failed_batches": config.get("IMPORTER_MAX_FAILED_BATCHES", 3),
        "yield_seconds": config.get("IMPORTER_BATCH_YIELD_SECONDS", 0.0),
    }
    options.update(overrides)
    return ImportJobProcessor(session, **options)


__all__ = [
    "ImportJobProcessor",
    "ImportSummary",
    "BatchOutcome",
    "RowAction",
    "predict_action",
    "build_import_processor",
    "truncate_message",
]
