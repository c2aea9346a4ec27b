"""Contracts shared by import modules, the session store, and the engine."""

from .columns import (
    ColumnType,
    TemplateColumn,
    build_alias_map,
    canonicalize_row,
    check_columns,
    header_warnings,
    normalize_header,
)
from .issues import IssueSeverity, RowIssue, RowOutcome
from .module import (
    ConflictPolicy,
    ImportModule,
    ModuleDescriptor,
    RestoreTarget,
    TemplateSpec,
    WriteResult,
)

__all__ = [
    "ColumnType",
    "ConflictPolicy",
    "ImportModule",
    "IssueSeverity",
    "ModuleDescriptor",
    "RestoreTarget",
    "RowIssue",
    "RowOutcome",
    "TemplateColumn",
    "TemplateSpec",
    "WriteResult",
    "build_alias_map",
    "canonicalize_row",
    "check_columns",
    "header_warnings",
    "normalize_header",
]
