# config/base.py
import os

DEFAULT_IMPORTER_MODULES = (
    "sysinit_app.importer.modules.locations",
    "sysinit_app.importer.modules.departments",
)


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=0.0):
    try:
        number = float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    return number if number >= minimum else default


def _parse_module_list(value, default=()):
    """
    Parse a comma-separated list of dotted module paths, keeping order and
    removing duplicates.

    Returns:
        tuple[str, ...]: Module package paths.
    """
    if value is None:
        return tuple(default)

    seen = set()
    modules = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item or item in seen:
            continue
        seen.add(item)
        modules.append(item)
    return tuple(modules)


class Config:
    # SECRET_KEY must be set via environment variable in production.
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_MODULES = _parse_module_list(os.environ.get("IMPORTER_MODULES"), default=DEFAULT_IMPORTER_MODULES)

    if IMPORTER_ENABLED and not IMPORTER_MODULES:
        raise ValueError(
            "IMPORTER_ENABLED is true but IMPORTER_MODULES is empty. " "Provide at least one module package."
        )

    IMPORTER_SESSION_TTL_MINUTES = _coerce_float(os.environ.get("IMPORTER_SESSION_TTL_MINUTES"), 30.0, minimum=1.0)
    IMPORTER_SESSION_BACKEND = (os.environ.get("IMPORTER_SESSION_BACKEND") or "memory").strip().lower()
    IMPORTER_REDIS_URL = os.environ.get("IMPORTER_REDIS_URL")
    IMPORTER_REDIS_PREFIX = os.environ.get("IMPORTER_REDIS_PREFIX", "sysinit:importer:")
    IMPORTER_SESSION_SWEEP_SECONDS = _coerce_int(os.environ.get("IMPORTER_SESSION_SWEEP_SECONDS"), 300, minimum=10)
    IMPORTER_CHUNK_SIZE = _coerce_int(os.environ.get("IMPORTER_CHUNK_SIZE"), 100, minimum=1)
    IMPORTER_CONTINUE_ON_ERROR = _coerce_bool(os.environ.get("IMPORTER_CONTINUE_ON_ERROR"), default=False)
    IMPORTER_MODULE_LOCK_TIMEOUT = _coerce_float(os.environ.get("IMPORTER_MODULE_LOCK_TIMEOUT"), 30.0)
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 10, minimum=1)
    IMPORTER_MAX_ROWS = _coerce_int(os.environ.get("IMPORTER_MAX_ROWS"), 10000, minimum=1)

    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows
    db_path = os.path.join(instance_path, "sysinit_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_SESSION_BACKEND = "memory"
    IMPORTER_WORKER_ENABLED = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
