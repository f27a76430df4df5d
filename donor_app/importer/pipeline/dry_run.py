"""
Dry runs over parsed uploads.

``preview_upload`` shows the header row and the first rows of a file.
``ImportValidator`` maps, validates and duplicate-checks rows exactly as
``ImportJobProcessor`` would and predicts the action the job's dedup strategy
would take (``predict_action``), without adding, merging or committing anything.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from donor_app.exceptions import ValidationError
from donor_app.importer.mapping import map_row, normalize_field_mapping, validate_required
from donor_app.importer.parsers import ParsedFile
from donor_app.models import DedupStrategy

from .duplicates import DuplicateDetector
from .job_service import resolve_dedup_strategy
from .orchestrator import RowAction, predict_action

PREVIEW_ROWS = 10
DEFAULT_MAX_ROWS = 100
COMMON_VALUE_LIMIT = 5
DUPLICATES_PER_ROW = 3


def preview_upload(parsed: ParsedFile, *, limit: int = PREVIEW_ROWS) -> dict[str, Any]:
    return {
        "headers": list(parsed.headers),
        "totalRows": parsed.total_rows,
        "blankRowsSkipped": parsed.rows_skipped_blank,
        "preview": parsed.rows[: max(limit, 0)],
    }


@dataclass
class _FieldStatistics:
    total: int = 0
    valid: int = 0
    empty: int = 0
    values: Counter = field(default_factory=Counter)

    def add(self, value: Any) -> None:
        self.total += 1
        if value is None or str(value).strip() == "":
            self.empty += 1
            return
        self.valid += 1
        self.values[str(value)] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCount": self.total,
            "validCount": self.valid,
            "emptyCount": self.empty,
            "uniqueValues": len(self.values),
            "commonValues": [
                {"value": value, "count": count} for value, count in self.values.most_common(COMMON_VALUE_LIMIT)
            ],
        }


_ACTION_COUNTERS = {
    RowAction.CREATE: "newRecords",
    RowAction.UPDATE: "updateRecords",
    RowAction.SKIP: "skippedRows",
    RowAction.ERROR: "errorRows",
}


class ImportValidator:
    """Predict the outcome of an import for the first ``max_rows`` rows."""

    def __init__(self, detector: DuplicateDetector, *, max_rows: int = DEFAULT_MAX_ROWS) -> None:
        self.detector = detector
        self.max_rows = max(1, int(max_rows))

    def validate(
        self,
        rows: Sequence[Mapping[str, Any]],
        field_mapping: Mapping[str, Any],
        strategy: str | DedupStrategy | None = None,
    ) -> dict[str, Any]:
        """
        Return per-row predictions, a summary and per-field statistics.

        Raises ``ValidationError`` for an unusable mapping or strategy, the
        same errors ``ImportJobService.create_job`` raises.
        """
        try:
            mapping = normalize_field_mapping(field_mapping)
        except ValueError as exc:
            raise ValidationError(str(exc), field="field_mapping") from exc
        if not mapping:
            raise ValidationError("Field mapping must map at least one column.", field="field_mapping")
        resolved = resolve_dedup_strategy(strategy)

        checked = rows[: self.max_rows]
        summary = {
            "totalRows": len(rows),
            "checkedRows": len(checked),
            "validRows": 0,
            "duplicateRows": 0,
            "newRecords": 0,
            "updateRecords": 0,
            "skippedRows": 0,
            "errorRows": 0,
        }
        statistics = {attribute: _FieldStatistics() for attribute in mapping}
        results = []

        for row_number, raw in enumerate(checked, start=1):
            result: dict[str, Any] = {
                "rowIndex": row_number,
                "originalData": dict(raw),
                "mappedData": {},
                "errors": [],
                "duplicates": [],
            }
            try:
                row = validate_required(map_row(raw, mapping, row_number=row_number))
            except ValidationError as exc:
                result["errors"].append(exc.message)
                action = RowAction.ERROR
                mapped: Mapping[str, Any] = {}
            else:
                mapped = row.mapped_values()
                matches = self.detector.find_duplicates(row)
                if matches:
                    summary["duplicateRows"] += 1
                summary["validRows"] += 1
                result["duplicates"] = [match.summary() for match in matches[:DUPLICATES_PER_ROW]]
                action = predict_action(resolved, matches)

            for attribute, stats in statistics.items():
                stats.add(mapped.get(attribute))
            summary[_ACTION_COUNTERS[action]] += 1
            result["mappedData"] = dict(mapped)
            result["action"] = action.value
            results.append(result)

        return {
            "dedupStrategy": resolved.value,
            "summary": summary,
            "results": results,
            "fieldStatistics": {attribute: stats.to_dict() for attribute, stats in statistics.items()},
        }


__all__ = ["preview_upload", "ImportValidator", "PREVIEW_ROWS"]
