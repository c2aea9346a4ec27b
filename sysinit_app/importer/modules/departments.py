"""Departments: organizational units assigned to a location, optionally nested."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from sysinit_app.models.masterdata import Department, Location

from ..contracts import (
    ColumnType,
    ImportModule,
    ModuleDescriptor,
    RowIssue,
    RowOutcome,
    TemplateColumn,
)
from ..errors import RowWriteError
from ..registry import ModuleRegistry
from .locations import CODE_PATTERN


class DepartmentsModule(ImportModule):
    """
    Rows are grouped by parent department so a parent and the children that
    follow it in the file always land in the same chunk transaction.
    """

    descriptor = ModuleDescriptor(
        id="departments",
        domain="organization",
        subdomain="structure",
        display_name="Departments",
        description="Departments and sub-departments, each assigned to a location.",
        dependencies=("locations",),
        priority=2,
        tags=("core",),
    )
    model = Department
    self_reference = "parent_id"
    columns = (
        TemplateColumn(
            name="code",
            display_name="Department Code",
            required=True,
            max_length=50,
            pattern=CODE_PATTERN,
            example="FIN",
            aliases=("department_code",),
        ),
        TemplateColumn(
            name="name",
            display_name="Name",
            required=True,
            max_length=200,
            example="Finance",
            aliases=("department_name",),
        ),
        TemplateColumn(
            name="location_code",
            display_name="Location Code",
            required=True,
            max_length=50,
            pattern=CODE_PATTERN,
            description="Code of an imported location.",
            example="HQ",
            aliases=("location", "site_code"),
        ),
        TemplateColumn(
            name="parent_code",
            display_name="Parent Department Code",
            max_length=50,
            pattern=CODE_PATTERN,
            description="Parent department; must exist or appear on an earlier row.",
            aliases=("parent", "parent_department"),
        ),
        TemplateColumn(name="cost_center", display_name="Cost Center", max_length=50, example="CC-100"),
        TemplateColumn(name="description", display_name="Description"),
        TemplateColumn(
            name="is_active",
            display_name="Active",
            type=ColumnType.BOOLEAN,
            example="true",
            aliases=("active",),
        ),
    )

    def validate_row(self, values: Mapping[str, Any]) -> RowOutcome:
        normalized = dict(values)
        issues: list[RowIssue] = []
        for name in ("code", "location_code", "parent_code"):
            if normalized.get(name):
                normalized[name] = str(normalized[name]).upper()
        if normalized.get("is_active") is None:
            normalized["is_active"] = True
        if normalized.get("parent_code") and normalized["parent_code"] == normalized["code"]:
            issues.append(
                RowIssue(
                    field="parent_code",
                    message="A department cannot be its own parent.",
                    code="self_reference",
                )
            )
        return RowOutcome(values=normalized, issues=tuple(issues))

    def group_key(self, values: Mapping[str, Any]) -> str | None:
        return values.get("parent_code") or values.get("code")

    def to_attributes(self, session: Session, values: Mapping[str, Any]) -> dict[str, Any]:
        location_id = session.execute(
            select(Location.id).where(Location.code == values["location_code"])
        ).scalar_one_or_none()
        if location_id is None:
            raise RowWriteError(f"Location '{values['location_code']}' does not exist.", field="location_code")

        parent_id = None
        if values.get("parent_code"):
            parent_id = session.execute(
                select(Department.id).where(Department.code == values["parent_code"])
            ).scalar_one_or_none()
            if parent_id is None:
                raise RowWriteError(
                    f"Parent department '{values['parent_code']}' does not exist.",
                    field="parent_code",
                )

        return {
            "code": values["code"],
            "name": values["name"],
            "description": values.get("description"),
            "location_id": location_id,
            "parent_id": parent_id,
            "cost_center": values.get("cost_center"),
            "is_active": bool(values.get("is_active", True)),
        }


def register(registry: ModuleRegistry) -> None:
    registry.register(DepartmentsModule())
