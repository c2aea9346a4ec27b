# config/validation.py

"""
Environment variable validation for the system initialization importer.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

SESSION_BACKENDS = ("memory", "redis")


def _is_true(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    backend = (os.environ.get("IMPORTER_SESSION_BACKEND") or "memory").strip().lower()
    if backend not in SESSION_BACKENDS:
        errors.append(f"IMPORTER_SESSION_BACKEND must be one of: {', '.join(SESSION_BACKENDS)}.")
    elif backend == "redis" and not os.environ.get("IMPORTER_REDIS_URL"):
        errors.append("IMPORTER_REDIS_URL is required when IMPORTER_SESSION_BACKEND=redis")

    if _is_true("IMPORTER_WORKER_ENABLED"):
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when IMPORTER_WORKER_ENABLED=true")
        if backend == "memory":
            errors.append(
                "IMPORTER_SESSION_BACKEND=redis is required when IMPORTER_WORKER_ENABLED=true "
                "so web and worker processes share validation sessions."
            )

    chunk_size = os.environ.get("IMPORTER_CHUNK_SIZE")
    if chunk_size is not None:
        try:
            if int(chunk_size) < 1:
                raise ValueError
        except ValueError:
            errors.append("IMPORTER_CHUNK_SIZE must be a positive integer")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
