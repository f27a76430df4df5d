"""Importer pipeline helpers."""

from __future__ import annotations

from .duplicates import (
    Confidence,
    DedupeThresholds,
    DuplicateDetector,
    DuplicateMatch,
    MatchStrategy,
    format_match_reasons,
    resolve_strategies,
)
from .dry_run import ImportValidator, preview_upload
from .job_service import ImportJobService, resolve_dedup_strategy
from .merge import build_new_donor, merge_into_donor
from .orchestrator import ImportJobProcessor, ImportSummary, RowAction, build_import_processor, predict_action
from .similarity import address_similarity, name_similarity, string_similarity

__all__ = [
    "Confidence",
    "DedupeThresholds",
    "DuplicateDetector",
    "DuplicateMatch",
    "MatchStrategy",
    "format_match_reasons",
    "resolve_strategies",
    "ImportValidator",
    "preview_upload",
    "ImportJobService",
    "resolve_dedup_strategy",
    "build_new_donor",
    "merge_into_donor",
    "ImportJobProcessor",
    "ImportSummary",
    "RowAction",
    "build_import_processor",
    "predict_action",
    "address_similarity",
    "name_similarity",
    "string_similarity",
]
