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


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "instance")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "dealer_trading.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-dealer-trading")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    FEED_DIRECTORY = os.environ.get("FEED_DIRECTORY", os.path.join(BASE_DIR, "feeds"))
    REMOVED_RETENTION_DAYS = _int_env("REMOVED_RETENTION_DAYS", 30)
    DELIVERED_RESET_DAYS = _int_env("DELIVERED_RESET_DAYS", 3)

    IMPORT_SCHEDULER_ENABLED = _bool_env("IMPORT_SCHEDULER_ENABLED", False)
    IMPORT_SCHEDULER_INTERVAL_SECONDS = _int_env("IMPORT_SCHEDULER_INTERVAL_SECONDS", 3600)
    IMPORT_SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("IMPORT_SCHEDULER_MIN_BACKOFF_SECONDS", 60)
    IMPORT_SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("IMPORT_SCHEDULER_MAX_BACKOFF_SECONDS", 3600)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for the production environment.")
        if env == "production" and self.SECRET_KEY == "dev-secret-dealer-trading":
            raise RuntimeError("SECRET_KEY must be changed for production.")
