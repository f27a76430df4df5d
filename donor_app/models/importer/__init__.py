from .schema import ACTIVE_STATUSES, TERMINAL_STATUSES, DedupStrategy, ImportJob, ImportJobStatus

__all__ = [
    "ImportJob",
    "ImportJobStatus",
    "DedupStrategy",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
]
