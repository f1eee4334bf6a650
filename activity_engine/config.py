import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "var")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "principal_activity.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    ACTIVITY_ENGINE_ENABLED = _bool_env("ACTIVITY_ENGINE_ENABLED", True)
    REFRESH_SCHEDULER_ENABLED = _bool_env("REFRESH_SCHEDULER_ENABLED", True)
    REFRESH_ON_STARTUP = _bool_env("REFRESH_ON_STARTUP", False)
    REFRESH_COALESCE_SECONDS = _float_env("REFRESH_COALESCE_SECONDS", 0.5)
    REFRESH_MAX_ATTEMPTS = _int_env("REFRESH_MAX_ATTEMPTS", 4)
    REFRESH_MIN_BACKOFF_SECONDS = _float_env("REFRESH_MIN_BACKOFF_SECONDS", 1.0)
    REFRESH_MAX_BACKOFF_SECONDS = _float_env("REFRESH_MAX_BACKOFF_SECONDS", 60.0)
    REFRESH_MAX_WORKERS = _int_env("REFRESH_MAX_WORKERS", 4)
    BUILD_TIMEOUT_SECONDS = _float_env("BUILD_TIMEOUT_SECONDS", 30.0)
    REFRESH_WORKER_INTERVAL_SECONDS = _int_env("REFRESH_WORKER_INTERVAL_SECONDS", 60)

    TIMELINE_MAX_EVENTS = _int_env("TIMELINE_MAX_EVENTS", 500)
    TIMELINE_DEFAULT_PAGE_SIZE = _int_env("TIMELINE_DEFAULT_PAGE_SIZE", 50)
    TIMELINE_MAX_PAGE_SIZE = _int_env("TIMELINE_MAX_PAGE_SIZE", 200)

    SNAPSHOT_RETENTION = _int_env("SNAPSHOT_RETENTION", 2)
    SNAPSHOT_PERSIST_ENABLED = _bool_env("SNAPSHOT_PERSIST_ENABLED", True)
    SNAPSHOT_SYNC_INTERVAL_SECONDS = _float_env("SNAPSHOT_SYNC_INTERVAL_SECONDS", 15.0)

    ENGAGEMENT_WEIGHT_RECENCY = _float_env("ENGAGEMENT_WEIGHT_RECENCY", 35.0)
    ENGAGEMENT_WEIGHT_VOLUME = _float_env("ENGAGEMENT_WEIGHT_VOLUME", 25.0)
    ENGAGEMENT_WEIGHT_WIN_RATE = _float_env("ENGAGEMENT_WEIGHT_WIN_RATE", 25.0)
    ENGAGEMENT_WEIGHT_PRODUCTS = _float_env("ENGAGEMENT_WEIGHT_PRODUCTS", 15.0)
    ENGAGEMENT_RECENCY_HALF_LIFE_DAYS = _float_env("ENGAGEMENT_RECENCY_HALF_LIFE_DAYS", 30.0)
    ENGAGEMENT_VOLUME_SATURATION = _int_env("ENGAGEMENT_VOLUME_SATURATION", 50)
    ENGAGEMENT_PRODUCT_SATURATION = _int_env("ENGAGEMENT_PRODUCT_SATURATION", 10)

    DASHBOARD_TOP_N = _int_env("DASHBOARD_TOP_N", 5)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL must be set in production.")
