# config.py
import os

def _csv_env(name: str, default: str = "") -> list[str]:
    val = os.getenv(name, default)
    # split only if non-empty; strip whitespace
    return [x.strip() for x in val.split(",")] if val else []

def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")

def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}

class BaseConfig:
    DEBUG = False
    TESTING = False
    JSON_SORT_KEYS = False
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10 MB
    PREFERRED_URL_SCHEME = "https"

    # Secrets (must be set in env for prod)
    SECRET_KEY = os.getenv("APP_SECRET_KEY") or "dev-only-secret-change-me"
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY") or "dev-only-jwt-secret-change-me"

    # CORS
    CORS_ORIGINS = _csv_env("CORS_ORIGINS", "http://localhost:8000,http://localhost:3000")

    # Mongo
    MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB = os.getenv("MONGO_DB", "mockverse")

    # Redis backs both the job queue and the socket.io backplane
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    SOCKETIO_MESSAGE_QUEUE = os.getenv("SOCKETIO_MESSAGE_QUEUE") or REDIS_URL

    # Queue
    QUEUE_PREFIX = os.getenv("QUEUE_PREFIX", "mq")
    MEDIA_ANALYSIS_QUEUE = os.getenv("MEDIA_ANALYSIS_QUEUE", "media-analysis")
    JOB_ATTEMPTS = _int_env("JOB_ATTEMPTS", 3)
    JOB_BACKOFF_MS = _int_env("JOB_BACKOFF_MS", 5000)
    JOB_DELAY_MS = _int_env("JOB_DELAY_MS", 1000)
    JOB_REMOVE_ON_COMPLETE = _int_env("JOB_REMOVE_ON_COMPLETE", 10)
    JOB_REMOVE_ON_FAIL = _int_env("JOB_REMOVE_ON_FAIL", 50)

    # Worker
    MEDIA_WORKER_CONCURRENCY = _int_env("MEDIA_WORKER_CONCURRENCY", 2)
    QUEUE_STALLED_INTERVAL_MS = _int_env("QUEUE_STALLED_INTERVAL_MS", 30000)
    QUEUE_MAX_STALLED_COUNT = _int_env("QUEUE_MAX_STALLED_COUNT", 1)
    QUEUE_POLL_INTERVAL_MS = _int_env("QUEUE_POLL_INTERVAL_MS", 1000)
    WORKER_SHUTDOWN_GRACE_S = _int_env("WORKER_SHUTDOWN_GRACE_S", 30)
    RUN_WORKER_IN_PROCESS = _bool_env("RUN_WORKER_IN_PROCESS", False)

    # External analysis service (Gemini Files API)
    GOOGLE_GENERATIVE_AI_API_KEY = os.getenv("GOOGLE_GENERATIVE_AI_API_KEY", "")
    MEDIA_ANALYSIS_MODEL = os.getenv("MEDIA_ANALYSIS_MODEL", "gemini-2.0-flash-lite")

    # Pipeline limits
    MEDIA_FETCH_TIMEOUT_S = _int_env("MEDIA_FETCH_TIMEOUT_S", 300)
    MEDIA_MAX_BYTES = _int_env("MEDIA_MAX_BYTES", 500 * 1024 * 1024)
    FILE_POLL_INTERVAL_S = _int_env("FILE_POLL_INTERVAL_S", 5)
    FILE_MAX_POLLS = _int_env("FILE_MAX_POLLS", 120)
    JOB_DEADLINE_SECONDS = _int_env("JOB_DEADLINE_SECONDS", 20 * 60)

    LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

class DevConfig(BaseConfig):
    DEBUG = True
    RUN_WORKER_IN_PROCESS = _bool_env("RUN_WORKER_IN_PROCESS", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL") or "DEBUG"

class ProdConfig(BaseConfig):
    LOG_LEVEL = os.getenv("LOG_LEVEL") or "WARNING"

class TestConfig(BaseConfig):
    TESTING = True
    RUN_WORKER_IN_PROCESS = False
    JWT_SECRET_KEY = "test-jwt-secret-with-enough-length-0123456789"
    SECRET_KEY = "test-secret"
    CORS_ORIGINS = ["*"]
    RATELIMIT_ENABLED = False
    LOG_LEVEL = "DEBUG"

def get_config():
    return ProdConfig if os.getenv("ENV") == "prod" else DevConfig

def validate_required_secrets():
    if os.getenv("ENV") == "prod":
        if not os.getenv("APP_SECRET_KEY") or not os.getenv("JWT_SECRET_KEY"):
            raise RuntimeError("APP_SECRET_KEY and JWT_SECRET_KEY must be set in production")
        if not os.getenv("GOOGLE_GENERATIVE_AI_API_KEY"):
            raise RuntimeError("GOOGLE_GENERATIVE_AI_API_KEY must be set in production")
