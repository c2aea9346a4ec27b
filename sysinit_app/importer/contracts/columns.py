"""Template column definitions and the generic per-column checks.

Each import module declares its upload columns once; the same definitions
drive template rendering, header alias mapping, and the type/length/pattern
checks applied before the module's own row contract runs.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence, Tuple

from .issues import IssueSeverity, RowIssue

TRUE_VALUES = frozenset({"true", "yes", "y", "1", "on"})
FALSE_VALUES = frozenset({"false", "no", "n", "0", "off"})

_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ColumnType(str, enum.Enum):
    """Value types understood by the generic column checks."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    EMAIL = "email"
    ENUM = "enum"


@dataclass(frozen=True)
class TemplateColumn:
    """Metadata describing one upload column."""

    name: str
    display_name: str
    type: ColumnType = ColumnType.STRING
    required: bool = False
    description: str = ""
    max_length: int | None = None
    pattern: str | None = None
    enum_values: Tuple[str, ...] = ()
    example: str | None = None
    aliases: Tuple[str, ...] = field(default_factory=tuple)

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases for matching."""

        return (self.name, self.display_name, *self.aliases)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "type": self.type.value,
            "required": self.required,
            "description": self.description,
            "max_length": self.max_length,
            "pattern": self.pattern,
            "enum_values": list(self.enum_values),
            "example": self.example,
        }


def normalize_header(header: str) -> str:
    """Normalize a header for comparison (case/space/underscore agnostic)."""

    token = str(header).strip().lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def build_alias_map(columns: Iterable[TemplateColumn]) -> dict[str, str]:
    alias_map: dict[str, str] = {}
    for column in columns:
        for header in column.headers():
            alias_map.setdefault(normalize_header(header), column.name)
    return alias_map


def canonicalize_row(
    raw: Mapping[str, Any],
    alias_map: Mapping[str, str],
) -> tuple[dict[str, Any], list[str]]:
    """
    Map raw header keys onto canonical column names.

    Returns the canonical payload and the list of headers that matched no
    column. When two headers map to the same column the first non-blank value
    wins.
    """

    canonical: dict[str, Any] = {}
    unknown: list[str] = []
    for key, value in raw.items():
        if key is None:
            continue
        target = alias_map.get(normalize_header(key))
        if target is None:
            unknown.append(str(key))
            continue
        if target in canonical and not _is_blank(value):
            if _is_blank(canonical[target]):
                canonical[target] = value
            continue
        canonical.setdefault(target, value)
    return canonical, unknown


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce(column: TemplateColumn, value: Any) -> Any:
    if column.type == ColumnType.INTEGER:
        if isinstance(value, bool):
            raise ValueError("expected a whole number")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError("expected a whole number")
        return int(str(value).strip()) if not isinstance(value, (int, float)) else int(value)
    if column.type == ColumnType.NUMBER:
        try:
            return float(Decimal(str(value).strip()))
        except InvalidOperation as exc:
            raise ValueError("expected a number") from exc
    if column.type == ColumnType.BOOLEAN:
        if isinstance(value, bool):
            return value
        token = str(value).strip().lower()
        if token in TRUE_VALUES:
            return True
        if token in FALSE_VALUES:
            return False
        raise ValueError("expected true/false, yes/no or 1/0")
    if column.type == ColumnType.DATE:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        return date.fromisoformat(str(value).strip()).isoformat()
    if column.type == ColumnType.EMAIL:
        text = str(value).strip().lower()
        if not _EMAIL_REGEX.match(text):
            raise ValueError("expected an email address")
        return text
    if column.type == ColumnType.ENUM:
        text = str(value).strip()
        for option in column.enum_values:
            if option.lower() == text.lower():
                return option
        raise ValueError("expected one of " + ", ".join(column.enum_values))
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet cells hand back 12.0 for a typed "12".
        return str(int(value))
    return str(value).strip()


def check_columns(
    columns: Sequence[TemplateColumn],
    payload: Mapping[str, Any],
) -> tuple[dict[str, Any], list[RowIssue]]:
    """
    Apply required/type/length/pattern/enum checks to a canonical payload.

    Returns normalized values (blank optional cells become ``None``) and the
    issues found. Checks never raise.
    """

    values: dict[str, Any] = {}
    issues: list[RowIssue] = []
    for column in columns:
        raw_value = payload.get(column.name)
        if _is_blank(raw_value):
            values[column.name] = None
            if column.required:
                issues.append(
                    RowIssue(
                        field=column.name,
                        message=f"{column.display_name} is required.",
                        code="required",
                    )
                )
            continue
        try:
            value = _coerce(column, raw_value)
        except (TypeError, ValueError) as exc:
            values[column.name] = raw_value
            issues.append(
                RowIssue(
                    field=column.name,
                    message=f"{column.display_name}: {exc}.",
                    code="invalid_type",
                )
            )
            continue

        if isinstance(value, str):
            if column.max_length is not None and len(value) > column.max_length:
                issues.append(
                    RowIssue(
                        field=column.name,
                        message=f"{column.display_name} must be at most {column.max_length} characters.",
                        code="max_length",
                    )
                )
            if column.pattern and not re.fullmatch(column.pattern, value):
                issues.append(
                    RowIssue(
                        field=column.name,
                        message=f"{column.display_name} does not match the expected format.",
                        code="pattern",
                    )
                )
        values[column.name] = value
    return values, issues


def header_warnings(unknown_headers: Iterable[str]) -> list[RowIssue]:
    return [
        RowIssue(
            field=header,
            message=f"Column '{header}' is not recognised and will be ignored.",
            severity=IssueSeverity.WARNING,
            code="unknown_column",
        )
        for header in unknown_headers
    ]
