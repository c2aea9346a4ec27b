import json
import logging
import sys

from flask import Flask

from sysinit_app.utils.logging_config import JSONFormatter, TextFormatter, build_formatter, setup_logging


def _record(**extra):
    record = logging.LogRecord("sysinit", logging.INFO, __file__, 10, "Import job finished", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_importer_fields():
    payload = json.loads(JSONFormatter().format(_record(importer_job_id="job-1", importer_rows_total=3, other="x")))
    assert payload["message"] == "Import job finished"
    assert payload["level"] == "INFO"
    assert payload["importer_job_id"] == "job-1"
    assert payload["importer_rows_total"] == 3
    assert "other" not in payload


def test_json_formatter_serialises_exceptions():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("sysinit", logging.ERROR, __file__, 10, "failed", None, sys.exc_info())
    payload = json.loads(JSONFormatter().format(record))
    assert payload["exception"]["type"] == "RuntimeError"
    assert payload["exception"]["message"] == "boom"


def test_text_formatter_appends_extras():
    line = TextFormatter().format(_record(importer_module_id="locations"))
    assert "Import job finished" in line
    assert line.endswith("| module_id=locations")


def test_build_formatter_defaults_to_json():
    assert isinstance(build_formatter(None), JSONFormatter)
    assert isinstance(build_formatter("TEXT"), TextFormatter)


def test_setup_logging_writes_rotating_file(tmp_path):
    app = Flask("logging-test")
    app.config.update(
        LOG_LEVEL="INFO",
        LOG_FORMAT="json",
        LOG_DIR=str(tmp_path / "logs"),
        ENABLE_FILE_LOGGING=True,
        ENABLE_CONSOLE_LOGGING=False,
    )
    setup_logging(app)
    setup_logging(app)  # re-running replaces handlers instead of stacking them

    handlers = [handler for handler in app.logger.handlers if getattr(handler, "_sysinit_handler", False)]
    assert len(handlers) == 1

    app.logger.info("Importer enabled", extra={"importer_modules": ["locations"]})
    for handler in handlers:
        handler.flush()

    lines = (tmp_path / "logs" / "sysinit.log").read_text(encoding="utf-8").splitlines()
    payload = json.loads(lines[-1])
    assert payload["message"] == "Importer enabled"
    assert payload["importer_modules"] == ["locations"]

    for handler in handlers:
        app.logger.removeHandler(handler)
        handler.close()
