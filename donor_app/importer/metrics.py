"""Prometheus metrics for the importer and duplicate detector."""

from __future__ import annotations

from typing import Literal

from prometheus_client import CollectorRegistry, Counter, Histogram

RowOutcome = Literal["created", "updated", "skipped", "error"]
BatchStatus = Literal["success", "failure"]


class ImporterMetrics:
    """
    Importer metric families bound to one registry.

    Constructed once per application by ``init_importer`` and injected into
    the processor and detector, so tests can build isolated instances with a
    fresh ``CollectorRegistry``.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._rows = Counter(
            "donor_import_rows_total",
            "Import rows processed by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self._batches = Counter(
            "donor_import_batches_total",
            "Import batches processed by status.",
            ["status"],
            registry=self.registry,
        )
        self._batch_duration = Histogram(
            "donor_import_batch_duration_seconds",
            "Duration of import batch processing in seconds.",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
            registry=self.registry,
        )
        self._jobs = Counter(
            "donor_import_jobs_total",
            "Import jobs reaching a terminal status.",
            ["status"],
            registry=self.registry,
        )
        self._duplicate_matches = Counter(
            "donor_duplicate_matches_total",
            "Duplicate matches returned by confidence bucket.",
            ["confidence"],
            registry=self.registry,
        )

    def record_row(self, outcome: RowOutcome, count: int = 1) -> None:
        if count:
            self._rows.labels(outcome=outcome).inc(count)

    def record_batch(self, *, status: BatchStatus, duration_seconds: float) -> None:
        self._batches.labels(status=status).inc()
        self._batch_duration.observe(duration_seconds)

    def record_job(self, status: str) -> None:
        self._jobs.labels(status=status).inc()

    def record_duplicate_match(self, confidence: str) -> None:
        self._duplicate_matches.labels(confidence=confidence).inc()

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of a sample, or 0.0 when it has not been observed."""
        value = self.registry.get_sample_value(name, labels or {})
        return float(value) if value is not None else 0.0


__all__ = ["ImporterMetrics"]
