# sysinit_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .importer import (
    ImportHistoryEntry,
    ImportJob,
    ImportJobRow,
    ImportJobStatus,
    ImportRowAction,
    ImportRowStatus,
)
from .masterdata import Department, Location

__all__ = [
    "db",
    "BaseModel",
    "Location",
    "Department",
    # Importer models
    "ImportJob",
    "ImportJobRow",
    "ImportJobStatus",
    "ImportRowAction",
    "ImportRowStatus",
    "ImportHistoryEntry",
]
