"""
Importer blueprint endpoints for health checks, the module list and job polling.
"""

from __future__ import annotations

from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from sysinit_app.utils.importer import is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import ImporterError, JobNotFoundError, UnknownModuleError
from .pipeline.jobs import DEFAULT_ROW_LIMIT
from .service import get_orchestrator

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    registry = importer_state.get("registry")
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "registry_ready": bool(registry is not None and registry.ready),
                "modules": [descriptor.id for descriptor in registry.ordered_descriptors()] if registry else [],
                "session_backend": importer_state.get("session_backend"),
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    enabled = importer_state.get("enabled", False)
    worker_enabled = importer_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "importer_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; jobs execute inline. Set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Importer worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


def _json_error(error: ImporterError | str, status: HTTPStatus):
    if isinstance(error, ImporterError):
        return jsonify({"error": error.message, "code": error.code}), status
    return jsonify({"error": error}), status


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


@importer_blueprint.get("/modules")
def importer_modules():
    """Modules in import order with dependency satisfaction and last import."""
    disabled = _ensure_importer_enabled_api()
    if disabled:
        return disabled
    return jsonify({"modules": get_orchestrator().list_modules()}), 200


@importer_blueprint.get("/jobs/<job_id>")
def importer_job_status(job_id: str):
    """Poll a job's status, progress counters and failed rows."""
    disabled = _ensure_importer_enabled_api()
    if disabled:
        return disabled
    try:
        row_limit = int(request.args.get("rows", DEFAULT_ROW_LIMIT))
    except ValueError:
        return _json_error("rows must be an integer.", HTTPStatus.BAD_REQUEST)
    try:
        view = get_orchestrator().status(job_id, row_limit=row_limit)
    except (JobNotFoundError, UnknownModuleError) as exc:
        return _json_error(exc, HTTPStatus.NOT_FOUND)
    return jsonify(view.as_dict()), 200
