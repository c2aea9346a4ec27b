"""
Initialization importer.

``init_importer`` discovers the configured import modules, validates their
dependency graph, builds the session store and orchestrator, and mounts the
blueprint and CLI. Everything is recorded on ``app.extensions['importer']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from sysinit_app.utils.importer import get_importer_modules, is_importer_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .errors import ImporterError
from .pipeline.execution import CommitOptions, CommitReceipt
from .pipeline.sessions import build_session_store
from .registry import ModuleRegistry, build_registry
from .service import IMPORTER_EXTENSION_KEY, ImportOrchestrator, get_orchestrator
from .views import importer_blueprint

EXECUTE_TASK_NAME = "importer.jobs.execute"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "CommitOptions",
    "CommitReceipt",
    "ImportOrchestrator",
    "ModuleRegistry",
    "get_celery_app",
    "get_orchestrator",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "module_paths": (),
            "registry": None,
            "session_store": None,
            "session_backend": None,
            "orchestrator": None,
            "worker_enabled": False,
            "celery_app": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def _celery_dispatcher(app: Flask, state: dict[str, Any]):
    """Enqueue committed jobs on the worker; a failed enqueue leaves the job pending."""

    def dispatch(job_id: str) -> None:
        celery_app = ensure_celery_app(app, state)
        task = celery_app.tasks.get(EXECUTE_TASK_NAME)
        if task is None:
            raise ImporterError(f"Worker task '{EXECUTE_TASK_NAME}' is not registered.", details={"job_id": job_id})
        try:
            task.apply_async(args=(job_id,))
        except Exception as exc:
            app.logger.exception("Failed to enqueue import job", extra={"importer_job_id": job_id})
            raise ImporterError(
                f"Import job '{job_id}' was created but could not be queued: {exc}. "
                "Run `flask importer execute` to process it inline.",
                details={"job_id": job_id},
            ) from exc

    return dispatch


def init_importer(app: Flask) -> None:
    """
    Conditionally build the importer and mount its blueprint and CLI.

    Module graph errors (duplicate ids, unknown dependencies, cycles) are
    raised here so a misconfigured deployment fails at startup.
    """
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    worker_enabled = is_worker_enabled(app)
    state.update({"enabled": enabled, "worker_enabled": worker_enabled})

    if not enabled:
        state.update({"registry": None, "orchestrator": None, "module_paths": ()})
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    module_paths = get_importer_modules(app)
    registry = build_registry(module_paths)
    store = build_session_store(app.config)
    dispatcher = _celery_dispatcher(app, state) if worker_enabled else None
    orchestrator = ImportOrchestrator.from_config(registry, store, app.config, dispatcher=dispatcher)
    state.update(
        {
            "module_paths": module_paths,
            "registry": registry,
            "session_store": store,
            "session_backend": type(store).__name__,
            "orchestrator": orchestrator,
        }
    )
    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    order = ", ".join(descriptor.id for descriptor in registry.ordered_descriptors()) or "none"
    app.logger.info(
        "Importer enabled with modules: %s",
        order,
        extra={"importer_modules": [descriptor.id for descriptor in registry.ordered_descriptors()]},
    )
