from __future__ import annotations

import io

import pytest
from openpyxl import Workbook

from sysinit_app.importer.adapters import (
    MissingHeaderError,
    RowLimitExceededError,
    UnsupportedUploadFormatError,
    UploadError,
    UploadTooLargeError,
    parse_upload,
)


def _xlsx_bytes(rows) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def test_parse_csv_keeps_file_line_numbers():
    content = (
        "\ufeff# Locations import template\n"
        "# code (string, required)\n"
        "code,name,city\n"
        "HQ,Headquarters,Springfield\n"
        ",,\n"
        "WH1,Warehouse,\n"
    ).encode("utf-8")

    parsed = parse_upload(content, file_name="locations.csv")

    assert parsed.format == "csv"
    assert parsed.headers == ["code", "name", "city"]
    assert parsed.rows == [
        {"code": "HQ", "name": "Headquarters", "city": "Springfield"},
        {"code": "WH1", "name": "Warehouse", "city": ""},
    ]
    assert parsed.row_numbers == [4, 6]
    assert parsed.size_bytes == len(content)


def test_parse_csv_short_rows_fill_missing_cells():
    parsed = parse_upload(b"code,name,city\nHQ,Headquarters\n", file_name="locations.csv")
    assert parsed.rows == [{"code": "HQ", "name": "Headquarters", "city": None}]


def test_parse_csv_falls_back_to_latin1():
    parsed = parse_upload("code,name\nMX,Canc\xfan\n".encode("latin-1"), file_name="sites.csv")
    assert parsed.rows[0]["name"] == "Canc\xfan"


def test_parse_csv_requires_header():
    with pytest.raises(MissingHeaderError):
        parse_upload(b"# only a comment\n\n", file_name="empty.csv")


def test_row_limit_enforced():
    content = b"code,name\nA,Alpha\nB,Beta\nC,Gamma\n"
    with pytest.raises(RowLimitExceededError):
        parse_upload(content, file_name="sites.csv", max_rows=2)
    assert len(parse_upload(content, file_name="sites.csv", max_rows=3).rows) == 3


def test_size_limit_enforced():
    with pytest.raises(UploadTooLargeError) as excinfo:
        parse_upload(b"code,name\nA,Alpha\n", file_name="sites.csv", max_bytes=5)
    assert excinfo.value.details["limit_bytes"] == 5


def test_unsupported_format():
    with pytest.raises(UnsupportedUploadFormatError):
        parse_upload(b"{}", file_name="sites.json")
    with pytest.raises(UnsupportedUploadFormatError):
        parse_upload(b"code\nA\n", file_name=None)


def test_file_name_is_sanitised():
    parsed = parse_upload(io.BytesIO(b"code\nA\n"), file_name="../../etc/sites list.csv")
    assert parsed.file_name == "sites_list.csv"


def test_parse_xlsx_first_sheet():
    content = _xlsx_bytes(
        [
            ["code", "name", "is_active", None],
            ["HQ", "Headquarters", True, None],
            [None, None, None, None],
            ["WH1", "Warehouse", False, None],
        ]
    )
    parsed = parse_upload(content, file_name="locations.xlsx")

    assert parsed.format == "xlsx"
    assert parsed.headers == ["code", "name", "is_active"]
    assert parsed.rows == [
        {"code": "HQ", "name": "Headquarters", "is_active": True},
        {"code": "WH1", "name": "Warehouse", "is_active": False},
    ]
    assert parsed.row_numbers == [2, 4]


def test_parse_xlsx_rejects_corrupt_workbook():
    with pytest.raises(UploadError):
        parse_upload(b"not a workbook", file_name="locations.xlsx")


def test_validate_upload_reports_file_rows(orchestrator):
    content = b"code,name\nHQ,Headquarters\n\n,Missing code\n"
    session = orchestrator.validate("locations", file=content, file_name="sites.csv")

    assert session.upload.file_name == "sites.csv"
    assert session.upload.format == "csv"
    assert [row.row_number for row in session.rows] == [2, 4]
    assert session.rows[1].issues[0].code == "required"
