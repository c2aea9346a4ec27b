"""Locations: physical sites every other master-data domain hangs off."""

from __future__ import annotations

from typing import Any, Mapping

from sysinit_app.models.masterdata import Location

from ..contracts import (
    ColumnType,
    ImportModule,
    ModuleDescriptor,
    RowIssue,
    RowOutcome,
    TemplateColumn,
)
from ..registry import ModuleRegistry

CODE_PATTERN = r"[A-Za-z0-9_-]+"


class LocationsModule(ImportModule):
    descriptor = ModuleDescriptor(
        id="locations",
        domain="organization",
        subdomain="sites",
        display_name="Locations",
        description="Campuses, offices and warehouses.",
        priority=1,
        tags=("core",),
    )
    model = Location
    columns = (
        TemplateColumn(
            name="code",
            display_name="Location Code",
            required=True,
            max_length=50,
            pattern=CODE_PATTERN,
            description="Unique site code; letters, digits, '-' and '_'.",
            example="HQ",
            aliases=("location_code", "site_code"),
        ),
        TemplateColumn(
            name="name",
            display_name="Name",
            required=True,
            max_length=200,
            example="Headquarters",
            aliases=("location_name", "site"),
        ),
        TemplateColumn(name="address", display_name="Address", max_length=500, example="1 Main St"),
        TemplateColumn(name="city", display_name="City", max_length=100, example="Springfield"),
        TemplateColumn(name="region", display_name="Region", max_length=100, aliases=("state", "province")),
        TemplateColumn(
            name="postal_code",
            display_name="Postal Code",
            max_length=20,
            aliases=("zip", "zip_code", "postcode"),
        ),
        TemplateColumn(
            name="country",
            display_name="Country",
            pattern=r"[A-Za-z]{2}",
            description="ISO 3166-1 alpha-2 code.",
            example="US",
        ),
        TemplateColumn(
            name="is_active",
            display_name="Active",
            type=ColumnType.BOOLEAN,
            description="Defaults to true when blank.",
            example="true",
            aliases=("active",),
        ),
    )

    def validate_row(self, values: Mapping[str, Any]) -> RowOutcome:
        normalized = dict(values)
        issues: list[RowIssue] = []
        normalized["code"] = str(normalized["code"]).upper()
        if normalized.get("country"):
            normalized["country"] = str(normalized["country"]).upper()
        if normalized.get("is_active") is None:
            normalized["is_active"] = True
        if normalized.get("name") and len(normalized["name"].strip()) < 2:
            issues.append(RowIssue(field="name", message="Name must be at least 2 characters.", code="too_short"))
        return RowOutcome(values=normalized, issues=tuple(issues))


def register(registry: ModuleRegistry) -> None:
    registry.register(LocationsModule())
