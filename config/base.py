# config/base.py
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


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer environment value, falling back to ``default``."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=0.0, maximum=None):
    """Parse a float environment value with optional bounds."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        return default
    if number < minimum:
        return default
    if maximum is not None and number > maximum:
        return default
    return number


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError("SECRET_KEY environment variable is required in production.")
    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 50, minimum=1)
    # Rows checked by a dry-run validation request.
    IMPORTER_VALIDATE_MAX_ROWS = _coerce_int(os.environ.get("IMPORTER_VALIDATE_MAX_ROWS"), 100, minimum=1)
    IMPORTER_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_BATCH_SIZE"), 100, minimum=1)
    IMPORTER_MAX_ERRORS = _coerce_int(os.environ.get("IMPORTER_MAX_ERRORS"), 1000, minimum=1)
    IMPORTER_MAX_WARNINGS = _coerce_int(os.environ.get("IMPORTER_MAX_WARNINGS"), 500, minimum=1)
    IMPORTER_MAX_MESSAGE_LENGTH = _coerce_int(os.environ.get("IMPORTER_MAX_MESSAGE_LENGTH"), 500, minimum=20)
    # Batches allowed to fail on infrastructure errors before the job is failed.
    IMPORTER_MAX_FAILED_BATCHES = _coerce_int(os.environ.get("IMPORTER_MAX_FAILED_BATCHES"), 3, minimum=0)
    IMPORTER_BATCH_YIELD_SECONDS = _coerce_float(os.environ.get("IMPORTER_BATCH_YIELD_SECONDS"), 0.0)
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=60
    )

    # Duplicate detection thresholds
    DEDUPE_HIGH_THRESHOLD = _coerce_float(os.environ.get("DEDUPE_HIGH_THRESHOLD"), 0.9, maximum=1.0)
    DEDUPE_MEDIUM_THRESHOLD = _coerce_float(os.environ.get("DEDUPE_MEDIUM_THRESHOLD"), 0.7, maximum=1.0)
    DEDUPE_LOW_THRESHOLD = _coerce_float(os.environ.get("DEDUPE_LOW_THRESHOLD"), 0.5, maximum=1.0)
    DEDUPE_NAME_POOL_LIMIT = _coerce_int(os.environ.get("DEDUPE_NAME_POOL_LIMIT"), 50, minimum=1)
    DEDUPE_CITY_POOL_LIMIT = _coerce_int(os.environ.get("DEDUPE_CITY_POOL_LIMIT"), 20, minimum=1)
    DEDUPE_STUDENT_POOL_LIMIT = _coerce_int(os.environ.get("DEDUPE_STUDENT_POOL_LIMIT"), 10, minimum=1)
    DEDUPE_MAX_RESULTS = _coerce_int(os.environ.get("DEDUPE_MAX_RESULTS"), 10, minimum=1)

    # Segments
    SEGMENT_PAGE_SIZE_DEFAULT = _coerce_int(os.environ.get("SEGMENT_PAGE_SIZE_DEFAULT"), 25, minimum=1)
    SEGMENT_PAGE_SIZE_MAX = _coerce_int(os.environ.get("SEGMENT_PAGE_SIZE_MAX"), 200, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

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
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_WORKER_ENABLED = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
