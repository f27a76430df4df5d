# donor_app/models/__init__.py
"""
Database models package
"""

from .audit import AuditLog
from .base import BaseModel, db
from .donor import ContactMethod, Donor, DonorType, EngagementLevel, GiftSizeTier
from .importer import ACTIVE_STATUSES, TERMINAL_STATUSES, DedupStrategy, ImportJob, ImportJobStatus
from .segment import SegmentDefinition

__all__ = [
    "db",
    "BaseModel",
    "AuditLog",
    "Donor",
    "DonorType",
    "EngagementLevel",
    "GiftSizeTier",
    "ContactMethod",
    "SegmentDefinition",
    "ImportJob",
    "ImportJobStatus",
    "DedupStrategy",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
]
