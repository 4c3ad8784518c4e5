# config/base.py
import os
import warnings
from datetime import timedelta

DEFAULT_SOURCES = "acculynx,jobnimbus,csv,roofr,hover,other"
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default):
    try:
        return float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        return default


def _parse_source_list(value):
    """
    Parse a comma-separated migration source list, lower-cased, in order, without duplicates.
    """
    sources = []
    for raw in (value or "").split(","):
        name = raw.strip().lower()
        if name and name not in sources:
            sources.append(name)
    return tuple(sources)


def _resolve_secret_key(flask_env):
    """
    Production refuses to boot without SECRET_KEY; development warns and
    falls back to a throwaway key.
    """
    secret_key = os.environ.get("SECRET_KEY")
    if secret_key:
        return secret_key
    if flask_env == "production":
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if flask_env == "testing":
        return "test-secret-key-placeholder"
    warnings.warn(
        "SECRET_KEY not set. Using default for development only. "
        "Set SECRET_KEY environment variable before deploying.",
        UserWarning,
    )
    return "dev-secret-key-change-in-production"


def _development_database_uri():
    instance_path = os.path.join(_PROJECT_ROOT, "instance")
    os.makedirs(instance_path, exist_ok=True)
    # sqlite:///absolute/path needs forward slashes on Windows too.
    db_path = os.path.join(instance_path, "crm_migrator_dev.db").replace("\\", "/")
    return os.environ.get("DATABASE_URL", f"sqlite:///{db_path}")


SQLITE_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 5}}


class Config:
    SECRET_KEY = _resolve_secret_key(os.environ.get("FLASK_ENV", "development"))

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Migration engine
    MIGRATIONS_ENABLED = _coerce_bool(os.environ.get("MIGRATIONS_ENABLED"), default=True)
    MIGRATION_SOURCES = _parse_source_list(os.environ.get("MIGRATION_SOURCES", DEFAULT_SOURCES))
    if MIGRATIONS_ENABLED and not MIGRATION_SOURCES:
        raise ValueError("MIGRATIONS_ENABLED is true but MIGRATION_SOURCES is empty. Provide at least one source.")

    MIGRATION_WORKER_ENABLED = _coerce_bool(os.environ.get("MIGRATION_WORKER_ENABLED"), default=False)
    MIGRATION_DEFAULT_BATCH_SIZE = _coerce_int(os.environ.get("MIGRATION_DEFAULT_BATCH_SIZE"), 100, minimum=1)
    MIGRATION_MAX_BATCH_SIZE = _coerce_int(os.environ.get("MIGRATION_MAX_BATCH_SIZE"), 1000, minimum=1)
    MIGRATION_RETRY_MAX_ATTEMPTS = _coerce_int(os.environ.get("MIGRATION_RETRY_MAX_ATTEMPTS"), 4, minimum=1)
    MIGRATION_RETRY_BASE_DELAY = _coerce_float(os.environ.get("MIGRATION_RETRY_BASE_DELAY"), 1.0)
    MIGRATION_RETRY_MAX_DELAY = _coerce_float(os.environ.get("MIGRATION_RETRY_MAX_DELAY"), 30.0)
    MIGRATION_HTTP_TIMEOUT = _coerce_float(os.environ.get("MIGRATION_HTTP_TIMEOUT"), 30.0)
    MIGRATION_ARTIFACT_DIR = os.environ.get("MIGRATION_ARTIFACT_DIR")
    MIGRATION_UPLOAD_DIR = os.environ.get("MIGRATION_UPLOAD_DIR")
    MIGRATION_TASK_TIME_LIMIT = _coerce_int(os.environ.get("MIGRATION_TASK_TIME_LIMIT"), 6 * 60 * 60, minimum=60)
    MIGRATION_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("MIGRATION_TASK_SOFT_TIME_LIMIT"), 6 * 60 * 60 - 300, minimum=30
    )
    MIGRATION_JOBS_PAGE_SIZE = _coerce_int(os.environ.get("MIGRATION_JOBS_PAGE_SIZE"), 25, minimum=1)

    # Worker transport; SQLite files under instance/ when unset
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _development_database_uri()
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    SQLALCHEMY_ENGINE_OPTIONS = SQLITE_ENGINE_OPTIONS if SQLALCHEMY_DATABASE_URI.startswith("sqlite") else {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = SQLITE_ENGINE_OPTIONS
    MIGRATION_RETRY_BASE_DELAY = 0.0
    MIGRATION_RETRY_MAX_DELAY = 0.0


class ProductionConfig(Config):
    DEBUG = False
    _uri = os.environ.get("DATABASE_URL")
    if _uri and _uri.startswith("postgres://"):
        _uri = _uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True
