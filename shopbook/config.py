import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shopbook.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DB_ECHO = _get_bool("DB_ECHO", False)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()

    BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "Asia/Shanghai").strip()
    SLOT_MINUTES = _get_int("SLOT_MINUTES", 30)
    DEFAULT_WORK_START_HOUR = _get_int("DEFAULT_WORK_START_HOUR", 10)
    DEFAULT_WORK_END_HOUR = _get_int("DEFAULT_WORK_END_HOUR", 21)
    MIN_ADVANCE_MINUTES = _get_int("MIN_ADVANCE_MINUTES", 60)
    CONSUMER_MIN_ADVANCE_DAYS = _get_int("CONSUMER_MIN_ADVANCE_DAYS", 1)

    # auto: postgres advisory locks on PostgreSQL, in-process locks otherwise
    BOOKING_LOCK_BACKEND = os.getenv("BOOKING_LOCK_BACKEND", "auto").strip().lower()
    BOOKING_LOCK_TIMEOUT_SECONDS = _get_float("BOOKING_LOCK_TIMEOUT_SECONDS", 3.0)
    BOOKING_LOCK_TTL_SECONDS = _get_int("BOOKING_LOCK_TTL_SECONDS", 30)
    LOCK_NAMESPACE = os.getenv("LOCK_NAMESPACE", "shopbook").strip()

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    LOG_JSON = _get_bool("LOG_JSON", True)

    MAINTENANCE_MODE = _get_bool("MAINTENANCE_MODE", False)
    MAINTENANCE_READ_ONLY = _get_bool("MAINTENANCE_READ_ONLY", False)
    MAINTENANCE_RETRY_AFTER_SECONDS = _get_int("MAINTENANCE_RETRY_AFTER_SECONDS", 120)
    BUSY_RETRY_AFTER_SECONDS = _get_int("BUSY_RETRY_AFTER_SECONDS", 1)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
    IDEMPOTENCY_RETENTION_HOURS = _get_int("IDEMPOTENCY_RETENTION_HOURS", 24)


settings = Settings()
