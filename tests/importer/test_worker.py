from __future__ import annotations

import json
from typing import Any, Dict

import pytest

from sysinit_app.importer import get_celery_app
from sysinit_app.importer.celery_app import DEFAULT_QUEUE_NAME, celery_settings
from sysinit_app.importer.errors import ImporterError
from sysinit_app.models import ImportJob, ImportJobStatus, Location, db


@pytest.fixture
def app_config():
    return {"IMPORTER_WORKER_ENABLED": True}


def test_celery_defaults_to_sqlite_transport(app, tmp_path):
    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert "celery.sqlite" in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert "importer-sweep-sessions" in celery_app.conf.beat_schedule
    assert {"importer.healthcheck", "importer.jobs.execute", "importer.sessions.sweep"} <= set(celery_app.tasks)


def test_celery_settings_merge_json_overrides(app):
    app.config["CELERY_CONFIG"] = '{"task_time_limit": 120}'
    settings = celery_settings(app)
    assert settings["task_time_limit"] == 120
    assert settings["task_routes"] == {"importer.*": {"queue": DEFAULT_QUEUE_NAME}}

    app.config["CELERY_CONFIG"] = "not json"
    assert celery_settings(app)["task_time_limit"] == 60 * 60


def test_tasks_run_inside_the_app_context(app):
    task = get_celery_app(app).tasks["importer.healthcheck"]
    assert task.app.flask_app is app
    assert task.apply().get()["status"] == "ok"


def test_commit_dispatches_to_worker(orchestrator, location_rows):
    session = orchestrator.validate("locations", location_rows(4))
    receipt = orchestrator.commit(session.session_id)

    # eager mode runs the task before commit returns
    assert receipt.status == "completed"
    assert Location.query.count() == 4


def test_failed_enqueue_leaves_job_pending(app, orchestrator, location_rows, monkeypatch):
    task = get_celery_app(app).tasks["importer.jobs.execute"]

    def broken_apply_async(*args, **kwargs):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(task, "apply_async", broken_apply_async)
    session = orchestrator.validate("locations", location_rows(2))

    with pytest.raises(ImporterError) as excinfo:
        orchestrator.commit(session.session_id)
    assert "could not be queued" in excinfo.value.message

    job = ImportJob.query.one()
    assert job.status == ImportJobStatus.PENDING
    assert Location.query.count() == 0


def test_execute_task_runs_pending_job(app, orchestrator, location_rows):
    orchestrator.engine.dispatcher = lambda job_id: None
    session = orchestrator.validate("locations", location_rows(3))
    receipt = orchestrator.commit(session.session_id)
    assert receipt.status == "pending"

    task = get_celery_app(app).tasks["importer.jobs.execute"]
    payload = task.apply(args=(receipt.job_id,)).get()

    assert payload["status"] == "completed"
    assert payload["counts"]["success"] == 3
    db.session.expire_all()
    assert Location.query.count() == 3


def test_sweep_task(app, orchestrator, location_rows):
    orchestrator.validate("locations", location_rows(1))
    task = get_celery_app(app).tasks["importer.sessions.sweep"]
    payload = task.apply().get()
    assert payload["removed"] == 0
    assert "swept_at" in payload


def test_worker_ping_cli(runner):
    result = runner.invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(app, runner, monkeypatch):
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = runner.invoke(
        args=[
            "importer",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "imports",
            "--beat",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
        "--beat",
    ]


def test_worker_health_endpoint(client):
    response = client.get("/importer/worker_health")
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["heartbeat"]["status"] == "ok"
