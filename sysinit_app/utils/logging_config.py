"""
Logging setup driven by the ``LOG_*`` settings in ``config.monitoring``.

Records logged with ``extra={"importer_*": ...}`` keep those keys: the JSON
formatter emits them as top-level fields and the text formatter appends them
as ``key=value`` pairs.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from flask import Flask

EXTRA_PREFIX = "importer_"
TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_HANDLER_MARKER = "_sysinit_handler"


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key.startswith(EXTRA_PREFIX)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(payload, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = _extra_fields(record)
        if extras:
            message += " | " + " ".join(f"{key[len(EXTRA_PREFIX):]}={value}" for key, value in extras.items())
        return message


def build_formatter(log_format: str | None) -> logging.Formatter:
    if (log_format or "json").lower() == "text":
        return TextFormatter()
    return JSONFormatter()


def _quiet_library_loggers(app: Flask) -> None:
    # per-row SQL and worker strategy chatter drown out chunk logs
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def setup_logging(app: Flask) -> None:
    """Attach console and rotating-file handlers to ``app.logger``."""

    config = app.config
    level = logging.getLevelName(str(config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    formatter = build_formatter(config.get("LOG_FORMAT"))

    for handler in list(app.logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            app.logger.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []
    if config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())
    if config.get("ENABLE_FILE_LOGGING", False):
        log_dir = Path(config.get("LOG_DIR", "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_dir / "sysinit.log",
                maxBytes=int(config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
                backupCount=int(config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARKER, True)
        app.logger.addHandler(handler)
    app.logger.setLevel(level)
    _quiet_library_loggers(app)
