"""Upload parsers for CSV and XLSX files."""

from __future__ import annotations

from .tabular import (
    MissingHeaderError,
    ParsedUpload,
    RowLimitExceededError,
    UnsupportedUploadFormatError,
    UploadError,
    UploadTooLargeError,
    parse_csv,
    parse_upload,
    parse_xlsx,
)

__all__ = [
    "MissingHeaderError",
    "ParsedUpload",
    "RowLimitExceededError",
    "UnsupportedUploadFormatError",
    "UploadError",
    "UploadTooLargeError",
    "parse_csv",
    "parse_upload",
    "parse_xlsx",
]
