"""
Utility helpers for importer feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def get_importer_modules(app=None) -> Tuple[str, ...]:
    """Return the dotted paths of the configured import module packages."""
    config = _get_config(app)
    modules: Iterable[str] = config.get("IMPORTER_MODULES", ())
    if isinstance(modules, str):
        modules = [part.strip() for part in modules.split(",")]
    return tuple(path for path in modules if path)


def is_worker_enabled(app=None) -> bool:
    config = _get_config(app)
    return bool(config.get("IMPORTER_WORKER_ENABLED", False))
