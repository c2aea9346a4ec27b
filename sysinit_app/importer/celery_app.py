"""
Celery wiring for the importer worker.

The worker executes committed import jobs (``importer.jobs.execute``) and
periodically sweeps expired validation sessions (``importer.sessions.sweep``).
Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` both the broker and the
result backend live in a SQLite file next to the Flask instance folder, so a
single-host deployment needs no extra services.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from celery import Celery, Task
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "sysinit-imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
DEFAULT_SWEEP_SECONDS = 300


class AppContextTask(Task):
    """Runs inside the Flask app context so tasks share ``db.session`` with inline execution."""

    def __call__(self, *args, **kwargs):
        with self.app.flask_app.app_context():
            return super().__call__(*args, **kwargs)


def transport_urls(app: Flask) -> tuple[str, str]:
    """Broker and result backend URLs, falling back to the SQLite transport."""

    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    sqlite_path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not sqlite_path.is_absolute():
        sqlite_path = Path(app.instance_path) / sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    # kombu wants forward slashes on every platform
    location = sqlite_path.as_posix()
    return broker_url or f"sqla+sqlite:///{location}", result_backend or f"db+sqlite:///{location}"


def _config_overrides(app: Flask) -> dict[str, Any]:
    overrides = app.config.get("CELERY_CONFIG")
    if not overrides:
        return {}
    if isinstance(overrides, str):
        try:
            overrides = json.loads(overrides)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return {}
    return dict(overrides)


def celery_settings(app: Flask) -> dict[str, Any]:
    """Full Celery configuration for ``app``; ``CELERY_CONFIG`` entries win."""

    broker_url, result_backend = transport_urls(app)
    settings: dict[str, Any] = {
        "broker_url": broker_url,
        "result_backend": result_backend,
        "broker_connection_retry_on_startup": True,
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        "task_routes": {"importer.*": {"queue": DEFAULT_QUEUE_NAME}},
        # one job per worker slot: a job holds its module lock until it finishes
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "task_time_limit": app.config.get("IMPORTER_TASK_TIME_LIMIT", 60 * 60),
        "task_soft_time_limit": app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 55 * 60),
        "beat_schedule": {
            "importer-sweep-sessions": {
                "task": "importer.sessions.sweep",
                "schedule": float(app.config.get("IMPORTER_SESSION_SWEEP_SECONDS", DEFAULT_SWEEP_SECONDS)),
            }
        },
        "worker_hijack_root_logger": False,
        "worker_task_log_format": "[%(asctime)s: %(levelname)s][%(task_name)s(%(task_id)s)] %(message)s",
    }
    settings.update(_config_overrides(app))
    return settings


def create_celery_app(app: Flask) -> Celery:
    settings = celery_settings(app)
    celery_app = Celery(app.import_name, task_cls=AppContextTask, include=("sysinit_app.importer.tasks",))
    celery_app.flask_app = app
    celery_app.conf.update(settings)
    celery_app.loader.import_default_modules()

    app.logger.info(
        "Importer worker configured",
        extra={
            "importer_celery_broker_url": settings["broker_url"],
            "importer_celery_result_backend": settings["result_backend"],
            "importer_celery_always_eager": bool(settings.get("task_always_eager")),
            "importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED"),
        },
    )
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = state["celery_app"] = create_celery_app(app)
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance for ``app``, or ``None`` while the importer is disabled."""

    state: dict[str, Any] | None = app.extensions.get("importer")
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
