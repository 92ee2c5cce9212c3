# config.py
import os


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


def _coerce_int(value, default, *, minimum=0):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    return max(minimum, number)


def _parse_name_list(value):
    """
    Parse a comma-separated name list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized identifiers.
    """
    if not value:
        return ()

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names)


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Object storage
    PIPELINE_STORAGE_BACKEND = os.environ.get("PIPELINE_STORAGE_BACKEND", "local").strip().lower()
    PIPELINE_STORAGE_ROOT = os.environ.get("PIPELINE_STORAGE_ROOT")
    PIPELINE_S3_BUCKET = os.environ.get("PIPELINE_S3_BUCKET")
    PIPELINE_S3_PREFIX = os.environ.get("PIPELINE_S3_PREFIX", "")
    PIPELINE_S3_ENDPOINT_URL = os.environ.get("PIPELINE_S3_ENDPOINT_URL")
    PIPELINE_S3_REGION = os.environ.get("PIPELINE_S3_REGION")

    if PIPELINE_STORAGE_BACKEND not in {"local", "s3"}:
        raise ValueError(
            f"PIPELINE_STORAGE_BACKEND must be 'local' or 's3', got '{PIPELINE_STORAGE_BACKEND}'."
        )

    # Load shedding against the shared warehouse database
    PIPELINE_BATCH_SIZE = _coerce_int(os.environ.get("PIPELINE_BATCH_SIZE"), 2000, minimum=1)
    PIPELINE_BATCH_DELAY_MS = _coerce_int(os.environ.get("PIPELINE_BATCH_DELAY_MS"), 500)
    PIPELINE_MAX_RETRIES = _coerce_int(os.environ.get("PIPELINE_MAX_RETRIES"), 5, minimum=1)
    PIPELINE_RETRY_BASE_MS = _coerce_int(os.environ.get("PIPELINE_RETRY_BASE_MS"), 15000)
    PIPELINE_RETRY_MAX_MS = _coerce_int(os.environ.get("PIPELINE_RETRY_MAX_MS"), 60000)
    PIPELINE_INGEST_WORKERS = _coerce_int(os.environ.get("PIPELINE_INGEST_WORKERS"), 4, minimum=1)
    PIPELINE_DB_POOL_SIZE = _coerce_int(os.environ.get("PIPELINE_DB_POOL_SIZE"), 5, minimum=1)
    PIPELINE_BULK_TIMEOUT_SECONDS = _coerce_int(os.environ.get("PIPELINE_BULK_TIMEOUT_SECONDS"), 600, minimum=1)
    PIPELINE_POINT_TIMEOUT_SECONDS = _coerce_int(os.environ.get("PIPELINE_POINT_TIMEOUT_SECONDS"), 15, minimum=1)
    PIPELINE_MATERIALIZE_DELAY_MS = _coerce_int(os.environ.get("PIPELINE_MATERIALIZE_DELAY_MS"), 1000)
    PIPELINE_RESOLVER_MAX_KEY_FANOUT = _coerce_int(os.environ.get("PIPELINE_RESOLVER_MAX_KEY_FANOUT"), 0)
    PIPELINE_SOURCES_PATH = os.environ.get("PIPELINE_SOURCES_PATH")
    PIPELINE_SOURCES = _parse_name_list(os.environ.get("PIPELINE_SOURCES", ""))

    # Celery worker
    PIPELINE_WORKER_ENABLED = _coerce_bool(os.environ.get("PIPELINE_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Guarded query boundary
    QUERY_MAX_ROWS = _coerce_int(os.environ.get("QUERY_MAX_ROWS"), 500, minimum=1)
    QUERY_TIMEOUT_SECONDS = _coerce_int(os.environ.get("QUERY_TIMEOUT_SECONDS"), 30, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, "donorhub_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

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
        SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_size": Config.PIPELINE_DB_POOL_SIZE,
            "max_overflow": 0,
            "pool_pre_ping": True,
        }


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
    PIPELINE_BATCH_DELAY_MS = 0
    PIPELINE_RETRY_BASE_MS = 0
    PIPELINE_RETRY_MAX_MS = 0
    PIPELINE_MATERIALIZE_DELAY_MS = 0
    PIPELINE_INGEST_WORKERS = 1


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_size": Config.PIPELINE_DB_POOL_SIZE,
        "max_overflow": 0,
        "pool_pre_ping": True,
        "pool_timeout": Config.PIPELINE_POINT_TIMEOUT_SECONDS,
    }
