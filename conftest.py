# conftest.py

import os
import tempfile
import uuid

import pytest

# Set testing environment BEFORE importing app so the module-level app uses TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from sysinit_app.models import db  # noqa: E402

BASE_TEST_CONFIG = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key-for-testing-only",
    "SQLALCHEMY_ECHO": False,
    "ENABLE_FILE_LOGGING": False,
    "ENABLE_CONSOLE_LOGGING": False,
    "LOG_LEVEL": "WARNING",
    "IMPORTER_ENABLED": True,
    "IMPORTER_SESSION_BACKEND": "memory",
    "IMPORTER_WORKER_ENABLED": False,
    "IMPORTER_CHUNK_SIZE": 100,
    "IMPORTER_CONTINUE_ON_ERROR": False,
    "IMPORTER_MODULE_LOCK_TIMEOUT": 2,
    "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
}


@pytest.fixture
def app_config():
    """Per-test overrides merged over ``BASE_TEST_CONFIG``; override in a module to customise."""
    return {}


@pytest.fixture(scope="function")
def app(app_config, tmp_path):
    """Create a Flask application bound to an isolated SQLite file"""
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    config = dict(BASE_TEST_CONFIG)
    config.update(
        {
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
        }
    )
    config.update(app_config)
    try:
        test_app = create_app(config, flask_env="testing")
        with test_app.app_context():
            db.drop_all()
            db.create_all()
            yield test_app
            db.session.remove()
            db.drop_all()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()
