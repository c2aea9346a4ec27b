from __future__ import annotations

from typing import Any

import pytest

from sysinit_app.importer import get_orchestrator
from sysinit_app.importer.contracts import ModuleDescriptor
from sysinit_app.importer.pipeline.execution import CommitOptions


def _location_rows(count: int, *, start: int = 1, prefix: str = "LOC") -> list[dict[str, Any]]:
    return [
        {
            "code": f"{prefix}{index:03d}",
            "name": f"Location {index}",
            "city": "Springfield",
            "country": "us",
        }
        for index in range(start, start + count)
    ]


def _department_rows(location_code: str = "LOC001") -> list[dict[str, Any]]:
    return [
        {"code": "FIN", "name": "Finance", "location_code": location_code},
        {"code": "FIN-AP", "name": "Accounts Payable", "location_code": location_code, "parent_code": "FIN"},
        {"code": "FIN-AR", "name": "Accounts Receivable", "location_code": location_code, "parent_code": "FIN"},
        {"code": "OPS", "name": "Operations", "location_code": location_code},
    ]


def _descriptor(module_id: str, *deps: str, priority: int = 100) -> ModuleDescriptor:
    return ModuleDescriptor(
        id=module_id,
        domain="test",
        display_name=module_id.title(),
        dependencies=tuple(deps),
        priority=priority,
    )


@pytest.fixture
def location_rows():
    return _location_rows


@pytest.fixture
def department_rows():
    return _department_rows


@pytest.fixture
def make_descriptor():
    return _descriptor


@pytest.fixture
def orchestrator(app):
    return get_orchestrator(app)


@pytest.fixture
def import_rows(orchestrator):
    """Validate and commit ``rows`` for ``module_id``; returns the receipt."""

    def _import(module_id: str, rows, **options):
        session = orchestrator.validate(module_id, rows)
        return orchestrator.commit(session.session_id, CommitOptions(**options))

    return _import


@pytest.fixture
def imported_locations(import_rows):
    receipt = import_rows("locations", _location_rows(3))
    assert receipt.status == "completed"
    return receipt
