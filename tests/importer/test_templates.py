from __future__ import annotations

import io

import pytest
from openpyxl import load_workbook

from sysinit_app.importer.adapters import parse_upload
from sysinit_app.importer.errors import UnknownModuleError


def test_template_spec_lists_columns(orchestrator):
    spec = orchestrator.get_template("departments")
    payload = spec.as_dict()

    assert payload["module_id"] == "departments"
    assert payload["format"] == "csv"
    assert payload["required_columns"] == ["code", "name", "location_code"]
    location_column = next(column for column in payload["columns"] if column["name"] == "location_code")
    assert location_column["required"] is True
    assert location_column["type"] == "string"


def test_template_rejects_unknown_format_and_module(orchestrator):
    with pytest.raises(ValueError):
        orchestrator.get_template("locations", "ods")
    with pytest.raises(UnknownModuleError):
        orchestrator.get_template("payroll")


def test_csv_template_round_trips_through_validation(orchestrator):
    rendered = orchestrator.render_template("locations", "csv")
    assert rendered.file_name == "locations-import-template.csv"
    assert rendered.content_type == "text/csv"

    text = rendered.content.decode("utf-8")
    assert text.startswith("# Locations import template")
    assert "# Required columns: code, name" in text

    parsed = parse_upload(rendered.content, file_name=rendered.file_name)
    assert parsed.headers[:2] == ["code", "name"]
    session = orchestrator.validate("locations", file=rendered.content, file_name=rendered.file_name)
    # the example row is a valid record
    assert session.can_proceed
    assert session.rows[0].values["code"] == "HQ"


def test_xlsx_template_has_data_and_instruction_sheets(orchestrator):
    rendered = orchestrator.render_template("locations", "xlsx")
    assert rendered.file_name.endswith(".xlsx")

    workbook = load_workbook(io.BytesIO(rendered.content))
    assert workbook.sheetnames == ["Data", "Instructions"]
    data = workbook["Data"]
    headers = [cell.value for cell in data[1]]
    assert headers[:2] == ["code", "name"]
    assert data["A1"].font.bold
    assert data["A1"].comment is not None
    assert data.freeze_panes == "A2"
    assert data["A2"].value == "HQ"

    active_letter = chr(ord("A") + headers.index("is_active"))
    ranges = [str(validation.sqref) for validation in data.data_validations.dataValidation]
    assert f"{active_letter}2:{active_letter}1000" in ranges

    instructions = workbook["Instructions"]
    assert instructions["A4"].value == "Column"
    assert instructions["A5"].value == "code"
    assert instructions["C5"].value == "yes"
