from __future__ import annotations

from app import create_app
from sysinit_app.importer import CommitOptions


def test_health_endpoint(client):
    response = client.get("/importer/health")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert payload["registry_ready"] is True
    assert payload["modules"] == ["locations", "departments"]
    assert payload["session_backend"] == "InMemorySessionStore"


def test_modules_endpoint(client, imported_locations):
    response = client.get("/importer/modules")
    assert response.status_code == 200
    modules = response.get_json()["modules"]
    assert [module["id"] for module in modules] == ["locations", "departments"]
    assert modules[0]["imported"] is True
    assert modules[0]["last_import"]["job_id"] == imported_locations.job_id
    assert modules[1]["can_import"] is True


def test_job_status_endpoint(client, orchestrator):
    session = orchestrator.validate(
        "locations",
        [{"code": "HQ", "name": "Headquarters"}, {"code": "", "name": "Nameless"}],
    )
    receipt = orchestrator.commit(session.session_id, CommitOptions(continue_on_error=True))

    response = client.get(f"/importer/jobs/{receipt.job_id}?rows=5")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "completed"
    assert payload["counts"]["success"] == 1
    assert payload["failed_rows"][0]["row_number"] == 3

    response = client.get(f"/importer/jobs/{receipt.job_id}?rows=0")
    assert response.get_json()["failed_rows"] == []


def test_job_status_errors(client):
    response = client.get("/importer/jobs/unknown-job")
    assert response.status_code == 404
    assert response.get_json()["code"] == "job_not_found"

    response = client.get("/importer/jobs/unknown-job?rows=many")
    assert response.status_code == 400


def test_worker_health_reports_disabled_worker(client):
    payload = client.get("/importer/worker_health").get_json()
    assert payload["status"] == "disabled"
    assert payload["worker_enabled"] is False


def test_unknown_route_returns_json(client):
    response = client.get("/importer/nope")
    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found"}


def test_blueprint_not_mounted_when_disabled(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "IMPORTER_ENABLED": False,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'disabled.db'}",
        },
        flask_env="testing",
    )
    assert "importer" not in app.blueprints
    assert app.extensions["importer"]["enabled"] is False
    assert app.test_client().get("/importer/health").status_code == 404
