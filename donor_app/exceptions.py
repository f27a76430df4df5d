"""
Error taxonomy shared by the segment compiler, duplicate detector and importer.

Row-level errors (``ValidationError``) are recorded and never abort a job.
Query errors are raised synchronously to the caller. Job-level errors move
the job to ``failed`` with a captured message.
"""

from __future__ import annotations

from typing import Any


class DonorAppError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "type": type(self).__name__}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DonorAppError):
    """Raised when an import row fails structural or required-field validation."""

    def __init__(self, message: str, *, field: str | None = None, row_number: int | None = None) -> None:
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if row_number is not None:
            details["row"] = row_number
        super().__init__(message, details=details)
        self.field = field
        self.row_number = row_number


# Segment query errors


class SegmentQueryError(DonorAppError):
    """Base class for structurally invalid segment queries."""


class UnknownFieldError(SegmentQueryError):
    def __init__(self, field: str) -> None:
        super().__init__(f"Unknown field: {field}", details={"field": field})
        self.field = field


class UnsupportedOperatorError(SegmentQueryError):
    def __init__(self, operator: str, *, field: str | None = None) -> None:
        if field:
            message = f"Unsupported operator '{operator}' for field '{field}'"
        else:
            message = f"Unsupported operator: {operator}"
        super().__init__(message, details={"operator": operator, "field": field})
        self.operator = operator
        self.field = field


class MalformedValueError(SegmentQueryError):
    def __init__(self, message: str, *, field: str | None = None, operator: str | None = None) -> None:
        super().__init__(message, details={"field": field, "operator": operator})
        self.field = field
        self.operator = operator


class SegmentNotFoundError(DonorAppError):
    def __init__(self, segment_id: str) -> None:
        super().__init__(f"Segment definition {segment_id} not found.")
        self.segment_id = segment_id


# Import job errors


class ImportJobError(DonorAppError):
    """Base class for job-level importer failures."""


class ParseError(ImportJobError):
    """Raised when an uploaded file cannot be read or has an unsupported format."""


class CancelledError(ImportJobError):
    """Raised when work is requested on a job that was cancelled."""


class CatastrophicBatchError(ImportJobError):
    """Raised when infrastructure failures exhaust the failed-batch tolerance."""

    def __init__(self, message: str, *, batch_number: int, failed_batches: int) -> None:
        super().__init__(message, details={"batch": batch_number, "failed_batches": failed_batches})
        self.batch_number = batch_number
        self.failed_batches = failed_batches


class InvalidTransitionError(ImportJobError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Import job {job_id} cannot move from {current} to {target}.",
            details={"job_id": job_id, "current": current, "target": target},
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFoundError(ImportJobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Import job {job_id} not found.")
        self.job_id = job_id


__all__ = [
    "DonorAppError",
    "ValidationError",
    "SegmentQueryError",
    "UnknownFieldError",
    "UnsupportedOperatorError",
    "MalformedValueError",
    "SegmentNotFoundError",
    "ImportJobError",
    "ParseError",
    "CancelledError",
    "CatastrophicBatchError",
    "InvalidTransitionError",
    "JobNotFoundError",
]
