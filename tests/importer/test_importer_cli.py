from __future__ import annotations

import json
from pathlib import Path

from app import create_app
from sysinit_app.models import Department, Location


def _write_csv(tmp_path: Path, name: str, content: str) -> Path:
    csv_file = tmp_path / name
    csv_file.write_text(content, encoding="utf-8")
    return csv_file


def _locations_csv(tmp_path: Path) -> Path:
    return _write_csv(
        tmp_path,
        "locations.csv",
        "code,name,city,country\n" "HQ,Headquarters,Springfield,US\n" "WH1,Warehouse,Shelbyville,US\n",
    )


def test_importer_group_lists_module_packages(runner):
    result = runner.invoke(args=["importer"])
    assert result.exit_code == 0, result.output
    assert "sysinit_app.importer.modules.locations" in result.output
    assert "sysinit_app.importer.modules.departments" in result.output


def test_modules_command_json(runner):
    result = runner.invoke(args=["importer", "modules", "--json"])
    assert result.exit_code == 0, result.output
    modules = json.loads(result.output)
    assert [module["id"] for module in modules] == ["locations", "departments"]
    assert modules[1]["missing_dependencies"] == ["locations"]


def test_modules_command_table(runner):
    result = runner.invoke(args=["importer", "modules"])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert "locations" in lines[0] and "ready" in lines[0]
    assert "departments" in lines[1] and "blocked" in lines[1]


def test_order_command(runner):
    result = runner.invoke(args=["importer", "order"])
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["1. locations", "2. departments (waiting for: locations)"]


def test_template_command_writes_file(runner, tmp_path):
    target = tmp_path / "departments.xlsx"
    result = runner.invoke(args=["importer", "template", "departments", "--format", "xlsx", "--output", str(target)])
    assert result.exit_code == 0, result.output
    assert target.exists()
    assert target.read_bytes()[:2] == b"PK"


def test_template_command_spec(runner):
    result = runner.invoke(args=["importer", "template", "locations", "--spec"])
    assert result.exit_code == 0, result.output
    spec = json.loads(result.output)
    assert spec["required_columns"] == ["code", "name"]


def test_template_command_unknown_module(runner):
    result = runner.invoke(args=["importer", "template", "payroll", "--spec"])
    assert result.exit_code != 0
    assert "[unknown_module]" in result.output


def test_validate_then_commit(runner, tmp_path):
    csv_path = _locations_csv(tmp_path)
    result = runner.invoke(args=["importer", "validate", "locations", "--file", str(csv_path)])
    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary["stats"]["valid_rows"] == 2
    assert summary["upload"]["file_name"] == "locations.csv"
    assert Location.query.count() == 0

    result = runner.invoke(args=["importer", "commit", summary["session_id"], "--actor", "ops"])
    assert result.exit_code == 0, result.output
    receipt = json.loads(result.output)
    assert receipt["status"] == "completed"
    assert Location.query.count() == 2

    result = runner.invoke(args=["importer", "status", receipt["job_id"]])
    assert result.exit_code == 0, result.output
    status = json.loads(result.output)
    assert status["actor"] == "ops"
    assert status["file_name"] == "locations.csv"


def test_validate_with_commit_and_rollback(runner, tmp_path):
    csv_path = _locations_csv(tmp_path)
    result = runner.invoke(args=["importer", "validate", "locations", "--file", str(csv_path), "--commit"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    job_id = payload["job"]["job_id"]

    departments = _write_csv(
        tmp_path,
        "departments.csv",
        "code,name,location_code,parent_code\n" "FIN,Finance,HQ,\n" "FIN-AP,Accounts Payable,HQ,FIN\n",
    )
    result = runner.invoke(args=["importer", "validate", "departments", "--file", str(departments), "--commit"])
    assert result.exit_code == 0, result.output
    assert Department.query.count() == 2

    result = runner.invoke(args=["importer", "rollback", job_id])
    assert result.exit_code != 0
    assert "[dependent_data_exists]" in result.output

    result = runner.invoke(args=["importer", "rollback", job_id, "--cascade", "--actor", "admin"])
    assert result.exit_code == 0, result.output
    rollback = json.loads(result.output)
    assert rollback["reversed_rows"] == 2
    assert rollback["cascaded"][0]["module_id"] == "departments"
    assert Location.query.count() == 0
    assert Department.query.count() == 0


def test_validate_commit_refuses_invalid_rows(runner, tmp_path):
    csv_path = _write_csv(tmp_path, "locations.csv", "code,name\nHQ,Headquarters\n,Nameless\n")
    result = runner.invoke(args=["importer", "validate", "locations", "--file", str(csv_path), "--commit"])
    assert result.exit_code != 0
    assert "[session_not_committable]" in result.output

    result = runner.invoke(
        args=["importer", "validate", "locations", "--file", str(csv_path), "--commit", "--continue-on-error"]
    )
    assert result.exit_code == 0, result.output
    assert Location.query.count() == 1


def test_validate_rejects_bad_chunk_size(runner, tmp_path):
    csv_path = _locations_csv(tmp_path)
    result = runner.invoke(
        args=["importer", "validate", "locations", "--file", str(csv_path), "--commit", "--chunk-size", "0"]
    )
    assert result.exit_code != 0
    assert "chunk_size" in result.output


def test_commit_unknown_session(runner):
    result = runner.invoke(args=["importer", "commit", "missing-session"])
    assert result.exit_code != 0
    assert "[session_not_found]" in result.output


def test_history_and_status_errors(runner, tmp_path):
    csv_path = _locations_csv(tmp_path)
    runner.invoke(args=["importer", "validate", "locations", "--file", str(csv_path), "--commit", "--dry-run"])

    result = runner.invoke(args=["importer", "history", "--module", "locations"])
    assert result.exit_code == 0, result.output
    entries = json.loads(result.output)
    assert len(entries) == 1 and entries[0]["dry_run"] is True

    result = runner.invoke(args=["importer", "history", "--exclude-dry-runs"])
    assert json.loads(result.output) == []

    result = runner.invoke(args=["importer", "status", "no-such-job"])
    assert result.exit_code != 0
    assert "[job_not_found]" in result.output


def test_jobs_command(runner, tmp_path):
    result = runner.invoke(args=["importer", "jobs"])
    assert result.exit_code == 0, result.output
    assert "No import jobs found." in result.output

    csv_path = _locations_csv(tmp_path)
    runner.invoke(args=["importer", "validate", "locations", "--file", str(csv_path), "--commit", "--dry-run"])

    result = runner.invoke(args=["importer", "jobs", "--module", "locations"])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert len(lines) == 1
    assert "completed" in lines[0]
    assert "2/2 ok, 0 failed (dry run)" in lines[0]

    result = runner.invoke(args=["importer", "jobs", "--status", "failed"])
    assert "No import jobs found." in result.output

    result = runner.invoke(args=["importer", "jobs", "--module", "payroll"])
    assert result.exit_code != 0
    assert "[unknown_module]" in result.output


def test_discard_and_sweep(runner, tmp_path):
    csv_path = _locations_csv(tmp_path)
    summary = json.loads(runner.invoke(args=["importer", "validate", "locations", "--file", str(csv_path)]).output)

    result = runner.invoke(args=["importer", "discard", summary["session_id"]])
    assert "discarded" in result.output
    result = runner.invoke(args=["importer", "sweep-sessions"])
    assert result.exit_code == 0, result.output
    assert "Removed 0 expired validation session(s)." in result.output


def test_disabled_importer_cli(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "IMPORTER_ENABLED": False,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'disabled.db'}",
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
        },
        flask_env="testing",
    )
    result = app.test_cli_runner().invoke(args=["importer"])
    assert result.exit_code != 0
    assert "IMPORTER_ENABLED=false" in result.output
