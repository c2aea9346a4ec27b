"""
Template generation for import modules.

``build_template`` returns the column specification; ``render_template``
turns it into a downloadable CSV or XLSX file. CSV templates carry the hints
as ``#`` comment lines above the header, which the CSV parser skips.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass

from openpyxl import Workbook
from openpyxl.comments import Comment
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation

from .contracts import ColumnType, ImportModule, TemplateColumn, TemplateSpec

TEMPLATE_FORMATS = ("csv", "xlsx")
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_CONTENT_TYPE = "text/csv"
VALIDATION_LAST_ROW = 1000
DATA_SHEET_TITLE = "Data"
NOTES_SHEET_TITLE = "Instructions"


@dataclass(frozen=True)
class RenderedTemplate:
    file_name: str
    content_type: str
    content: bytes


def _resolve_format(template_format: str | None) -> str:
    resolved = (template_format or "csv").strip().lower()
    if resolved not in TEMPLATE_FORMATS:
        raise ValueError(f"Unsupported template format '{template_format}'. Use 'csv' or 'xlsx'.")
    return resolved


def build_template(module: ImportModule, template_format: str | None = "csv") -> TemplateSpec:
    return TemplateSpec(
        module_id=module.id,
        display_name=module.descriptor.display_name,
        format=_resolve_format(template_format),
        columns=tuple(module.columns),
    )


def _hint(column: TemplateColumn) -> str:
    parts = [f"{column.name} ({column.type.value}{', required' if column.required else ''})"]
    if column.description:
        parts.append(column.description)
    if column.enum_values:
        parts.append("one of: " + ", ".join(column.enum_values))
    if column.max_length:
        parts.append(f"max {column.max_length} characters")
    return " - ".join(parts)


def _render_csv(spec: TemplateSpec) -> bytes:
    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer)
    writer.writerow([f"# {spec.display_name} import template"])
    if spec.required_columns:
        writer.writerow([f"# Required columns: {', '.join(spec.required_columns)}"])
    for column in spec.columns:
        writer.writerow([f"# {_hint(column)}"])
    writer.writerow([column.name for column in spec.columns])
    writer.writerow([column.example or "" for column in spec.columns])
    return buffer.getvalue().encode("utf-8")


def _render_xlsx(spec: TemplateSpec) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = DATA_SHEET_TITLE
    header_font = Font(bold=True)
    required_fill = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")

    for index, column in enumerate(spec.columns, start=1):
        letter = get_column_letter(index)
        header = sheet.cell(row=1, column=index, value=column.name)
        header.font = header_font
        if column.required:
            header.fill = required_fill
        header.comment = Comment(_hint(column), "importer")
        sheet.cell(row=2, column=index, value=column.example)
        sheet.column_dimensions[letter].width = max(14, len(column.name) + 4)

        if column.type == ColumnType.ENUM and column.enum_values:
            validation = DataValidation(
                type="list",
                formula1='"' + ",".join(column.enum_values) + '"',
                allow_blank=not column.required,
            )
            validation.showErrorMessage = True
            validation.promptTitle = f"Select {column.display_name}"
            validation.prompt = ", ".join(column.enum_values)[:255]
            sheet.add_data_validation(validation)
            validation.add(f"{letter}2:{letter}{VALIDATION_LAST_ROW}")
        elif column.type == ColumnType.BOOLEAN:
            validation = DataValidation(type="list", formula1='"true,false"', allow_blank=True)
            sheet.add_data_validation(validation)
            validation.add(f"{letter}2:{letter}{VALIDATION_LAST_ROW}")
    sheet.freeze_panes = "A2"

    notes = workbook.create_sheet(title=NOTES_SHEET_TITLE)
    notes.append([f"{spec.display_name} import template"])
    notes["A1"].font = header_font
    notes.append(["Fill the Data sheet starting on row 2. Highlighted headers are required."])
    notes.append([])
    notes.append(["Column", "Type", "Required", "Description"])
    for cell in notes[4]:
        cell.font = header_font
    for column in spec.columns:
        notes.append(
            [
                column.name,
                column.type.value,
                "yes" if column.required else "no",
                _hint(column),
            ]
        )
    notes.column_dimensions["A"].width = 24
    notes.column_dimensions["D"].width = 80

    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


def render_template(module: ImportModule, template_format: str | None = "csv") -> RenderedTemplate:
    spec = build_template(module, template_format)
    file_base = f"{module.id}-import-template"
    if spec.format == "xlsx":
        return RenderedTemplate(f"{file_base}.xlsx", XLSX_CONTENT_TYPE, _render_xlsx(spec))
    return RenderedTemplate(f"{file_base}.csv", CSV_CONTENT_TYPE, _render_csv(spec))
