"""
Importer-specific utilities for upload handling and JSON-safe payloads.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from werkzeug.utils import secure_filename

CSV_EXTENSIONS: tuple[str, ...] = ("csv",)
EXCEL_EXTENSIONS: tuple[str, ...] = ("xlsx", "xlsm")


def detect_upload_format(filename: str | None) -> str | None:
    """Return ``csv`` or ``xlsx`` for a supported filename, else ``None``."""

    if not filename:
        return None
    extension = Path(filename).suffix.lstrip(".").lower()
    if extension in CSV_EXTENSIONS:
        return "csv"
    if extension in EXCEL_EXTENSIONS:
        return "xlsx"
    return None


def safe_upload_name(filename: str | None) -> str | None:
    if not filename:
        return None
    return secure_filename(Path(filename).name) or None


def ensure_json_serializable(value: Any) -> Any:
    """
    Best-effort conversion of values to JSON-serializable representations.
    """

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return str(value)


def normalize_payload(payload: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Return a shallow copy of ``payload`` with JSON-serializable values.
    """

    if not payload:
        return {}
    normalized: dict[str, Any] = {}
    for key, value in payload.items():
        if key is None:
            continue
        normalized[str(key)] = ensure_json_serializable(value)
    return normalized
