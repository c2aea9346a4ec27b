"""Row-level findings produced during validation."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, Tuple


class IssueSeverity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class RowIssue:
    """
    A single data-quality finding for one row.

    Attributes:
        field: Canonical column name, or ``None`` for row-wide findings.
        message: Human-friendly explanation shown to the uploader.
        severity: ERROR blocks the row; WARNING is informational.
        code: Stable identifier (e.g. ``required``, ``duplicate_key``).
    """

    field: str | None
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR
    code: str = "invalid_value"

    @property
    def is_error(self) -> bool:
        return self.severity == IssueSeverity.ERROR

    def as_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "message": self.message,
            "severity": self.severity.value,
            "code": self.code,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RowIssue":
        return cls(
            field=payload.get("field"),
            message=str(payload.get("message", "")),
            severity=IssueSeverity(payload.get("severity", IssueSeverity.ERROR.value)),
            code=str(payload.get("code", "invalid_value")),
        )


@dataclass(frozen=True)
class RowOutcome:
    """Result of a module's pure row contract: normalized values plus findings."""

    values: Mapping[str, Any]
    issues: Tuple[RowIssue, ...] = field(default_factory=tuple)

    @property
    def has_errors(self) -> bool:
        return any(issue.is_error for issue in self.issues)
