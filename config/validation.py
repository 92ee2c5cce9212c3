# config/validation.py

"""
Startup checks for the warehouse pipeline environment.

Only production is validated; development and testing fall back to local
defaults (instance-folder blobs, SQLite broker).
"""

import os
import sys
from typing import Callable, Dict, List, Optional, Tuple

_PLACEHOLDER_SECRETS = {"", "your-secret-key", "your_secret_key", "change-me"}


def _flag(env: Dict[str, str], name: str) -> bool:
    return env.get(name, "false").strip().lower() in {"1", "true", "yes", "on"}


def _check_secret_key(env: Dict[str, str]) -> Optional[str]:
    if env.get("SECRET_KEY", "") in _PLACEHOLDER_SECRETS:
        return (
            "SECRET_KEY is required in production and must not be a placeholder. "
            'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    return None


def _check_database(env: Dict[str, str]) -> Optional[str]:
    if not env.get("DATABASE_URL"):
        return "DATABASE_URL is required in production (PostgreSQL connection string)."
    return None


def _check_storage(env: Dict[str, str]) -> Optional[str]:
    backend = env.get("PIPELINE_STORAGE_BACKEND", "local").strip().lower()
    if backend == "s3" and not env.get("PIPELINE_S3_BUCKET"):
        return "PIPELINE_S3_BUCKET is required when PIPELINE_STORAGE_BACKEND=s3"
    if backend == "local" and not env.get("PIPELINE_STORAGE_ROOT"):
        return "PIPELINE_STORAGE_ROOT is required for the local storage backend in production"
    return None


def _check_source_registry(env: Dict[str, str]) -> Optional[str]:
    path = env.get("PIPELINE_SOURCES_PATH")
    if path and not os.path.exists(path):
        return f"PIPELINE_SOURCES_PATH points to a missing file: {path}"
    return None


def _check_worker(env: Dict[str, str]) -> Optional[str]:
    if _flag(env, "PIPELINE_WORKER_ENABLED") and not env.get("CELERY_BROKER_URL"):
        return "CELERY_BROKER_URL is required when PIPELINE_WORKER_ENABLED=true"
    return None


PRODUCTION_CHECKS: Tuple[Callable[[Dict[str, str]], Optional[str]], ...] = (
    _check_secret_key,
    _check_database,
    _check_storage,
    _check_source_registry,
    _check_worker,
)


def validate_environment(flask_env: str = None, env: Dict[str, str] = None) -> Tuple[bool, List[str]]:
    """
    Run the production checks against ``env`` (defaults to ``os.environ``).

    Returns ``(is_valid, errors)``; non-production environments always pass.
    """
    env = dict(os.environ if env is None else env)
    if flask_env is None:
        flask_env = env.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [message for message in (check(env) for check in PRODUCTION_CHECKS) if message]
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Print every failed check to stderr and exit non-zero."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    print(rule, file=sys.stderr)
    print("PIPELINE ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
    print(rule, file=sys.stderr)
    for index, error in enumerate(errors, 1):
        print(f"{index}. {error}", file=sys.stderr)
    print(rule, file=sys.stderr)
    sys.exit(1)
