"""
CSV and XLSX upload parsing.

Both parsers return raw row mappings keyed by the header text found in the
file; header aliases are resolved later against the module's columns. Blank
rows are dropped, but each kept row remembers its line number in the file so
findings point at the row the user sees in their spreadsheet. CSV lines that
start with ``#`` before the header are treated as comments, which lets the
generated CSV templates carry hints.
"""

from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass, field
from typing import IO, Any, Iterable, Iterator

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import ImporterError
from ..pipeline.sessions import UploadReference
from ..utils import detect_upload_format, safe_upload_name

DEFAULT_MAX_ROWS = 10000
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
COMMENT_PREFIX = "#"


class UploadError(ImporterError):
    """Raised when an uploaded file cannot be parsed."""

    code = "invalid_upload"


class UnsupportedUploadFormatError(UploadError):
    code = "unsupported_format"

    def __init__(self, file_name: str | None) -> None:
        super().__init__(
            f"Unsupported upload '{file_name or 'upload'}'. Upload a .csv or .xlsx file.",
            details={"file_name": file_name},
        )


class UploadTooLargeError(UploadError):
    code = "file_too_large"

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"Uploaded file is {size_bytes} bytes; the limit is {limit_bytes} bytes.",
            details={"size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )


class RowLimitExceededError(UploadError):
    code = "row_limit_exceeded"

    def __init__(self, limit: int) -> None:
        super().__init__(f"File exceeds the row limit of {limit}.", details={"limit": limit})


class MissingHeaderError(UploadError):
    code = "missing_header"

    def __init__(self, file_format: str) -> None:
        super().__init__(f"{file_format.upper()} header row is missing.", details={"format": file_format})


@dataclass(slots=True)
class ParsedUpload:
    file_name: str | None
    format: str
    size_bytes: int
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_numbers: list[int] = field(default_factory=list)

    def upload_reference(self) -> UploadReference:
        return UploadReference(file_name=self.file_name, size_bytes=self.size_bytes, format=self.format)


def _read_content(source: bytes | str | IO[Any]) -> bytes:
    if isinstance(source, str):
        return source.encode("utf-8")
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if hasattr(source, "seek"):
        source.seek(0)
    content = source.read()
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content or b"")


def _is_blank(values: Iterable[Any]) -> bool:
    return all(value is None or (isinstance(value, str) and not value.strip()) for value in values)


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def _csv_records(text: str) -> Iterator[tuple[int, list[str]]]:
    reader = csv.reader(io.StringIO(text, newline=""))
    for record in reader:
        yield reader.line_num, record


def parse_csv(content: bytes, *, max_rows: int = DEFAULT_MAX_ROWS) -> tuple[list[str], list[dict[str, Any]], list[int]]:
    headers: list[str] | None = None
    rows: list[dict[str, Any]] = []
    row_numbers: list[int] = []
    for line_number, record in _csv_records(_decode(content)):
        if headers is None:
            if _is_blank(record) or record[0].lstrip().startswith(COMMENT_PREFIX):
                continue
            headers = [cell.strip() for cell in record]
            if not any(headers):
                raise MissingHeaderError("csv")
            continue
        if _is_blank(record):
            continue
        if len(rows) >= max_rows:
            raise RowLimitExceededError(max_rows)
        row = {header: (record[index] if index < len(record) else None) for index, header in enumerate(headers) if header}
        rows.append(row)
        row_numbers.append(line_number)
    if headers is None:
        raise MissingHeaderError("csv")
    return [header for header in headers if header], rows, row_numbers


def parse_xlsx(content: bytes, *, max_rows: int = DEFAULT_MAX_ROWS) -> tuple[list[str], list[dict[str, Any]], list[int]]:
    try:
        workbook = load_workbook(io.BytesIO(content), data_only=True, read_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise UploadError(f"Could not read the workbook: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        header_row = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True), None)
        indexed_headers = [
            (index, str(value).strip())
            for index, value in enumerate(header_row or ())
            if value is not None and str(value).strip()
        ]
        if not indexed_headers:
            raise MissingHeaderError("xlsx")

        rows: list[dict[str, Any]] = []
        row_numbers: list[int] = []
        for line_number, values in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if _is_blank(values):
                continue
            if len(rows) >= max_rows:
                raise RowLimitExceededError(max_rows)
            rows.append(
                {header: values[index] if index < len(values) else None for index, header in indexed_headers}
            )
            row_numbers.append(line_number)
    finally:
        workbook.close()
    return [header for _index, header in indexed_headers], rows, row_numbers


def parse_upload(
    source: bytes | str | IO[Any],
    *,
    file_name: str | None,
    file_format: str | None = None,
    max_rows: int = DEFAULT_MAX_ROWS,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> ParsedUpload:
    """Parse an uploaded CSV or XLSX file into raw row mappings."""

    resolved_format = (file_format or detect_upload_format(file_name) or "").lower()
    if resolved_format not in {"csv", "xlsx"}:
        raise UnsupportedUploadFormatError(file_name)

    content = _read_content(source)
    if len(content) > max_bytes:
        raise UploadTooLargeError(len(content), max_bytes)

    if resolved_format == "csv":
        headers, rows, row_numbers = parse_csv(content, max_rows=max_rows)
    else:
        headers, rows, row_numbers = parse_xlsx(content, max_rows=max_rows)

    return ParsedUpload(
        file_name=safe_upload_name(file_name),
        format=resolved_format,
        size_bytes=len(content),
        headers=headers,
        rows=rows,
        row_numbers=row_numbers,
    )
