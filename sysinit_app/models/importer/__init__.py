"""
Importer-specific SQLAlchemy models.

These models back the initialization importer: jobs, staged job rows, and the
history ledger.
"""

from .schema import (
    ALLOWED_JOB_TRANSITIONS,
    TERMINAL_JOB_STATUSES,
    ImportHistoryEntry,
    ImportJob,
    ImportJobRow,
    ImportJobStatus,
    ImportRowAction,
    ImportRowStatus,
)

__all__ = [
    "ALLOWED_JOB_TRANSITIONS",
    "TERMINAL_JOB_STATUSES",
    "ImportHistoryEntry",
    "ImportJob",
    "ImportJobRow",
    "ImportJobStatus",
    "ImportRowAction",
    "ImportRowStatus",
]
