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
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./studiodesk.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", True)
    SQLITE_BUSY_TIMEOUT_SECONDS = _get_float("SQLITE_BUSY_TIMEOUT_SECONDS", 15.0)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()

    DEFAULT_COMPANY_SLUG = os.getenv("DEFAULT_COMPANY_SLUG", "studio").strip().lower()
    DEFAULT_COMPANY_NAME = os.getenv("DEFAULT_COMPANY_NAME", "Studio").strip()
    DEFAULT_STORE_TIMEZONE = os.getenv("DEFAULT_STORE_TIMEZONE", "Europe/Madrid").strip()
    DEFAULT_PAGE_LIMIT = _get_int("DEFAULT_PAGE_LIMIT", 20)

    SLOT_STEP_MINUTES = _get_int("SLOT_STEP_MINUTES", 30)
    APP_PUBLIC_URL = os.getenv("APP_PUBLIC_URL", "http://127.0.0.1:8000").strip()

    REMINDER_MAX_RETRIES = _get_int("REMINDER_MAX_RETRIES", 3)
    REMINDER_RETRY_DELAY_MINUTES = _get_int("REMINDER_RETRY_DELAY_MINUTES", 30)
    CONFIRMATION_EXPIRY_HOURS_BEFORE = _get_int("CONFIRMATION_EXPIRY_HOURS_BEFORE", 12)
    BIRTHDAY_GREETING_HOUR = _get_int("BIRTHDAY_GREETING_HOUR", 10)
    BIRTHDAY_LOOKAHEAD_DAYS = _get_int("BIRTHDAY_LOOKAHEAD_DAYS", 7)
    POST_CARE_FOLLOWUP_HOURS = _get_int("POST_CARE_FOLLOWUP_HOURS", 48)
    POST_CARE_LOOKBACK_DAYS = _get_int("POST_CARE_LOOKBACK_DAYS", 14)
    DEFAULT_MESSAGE_LANGUAGE = os.getenv("DEFAULT_MESSAGE_LANGUAGE", "es").strip().lower()
    MESSAGING_WEBHOOK_URL = os.getenv("MESSAGING_WEBHOOK_URL", "").strip()
    MESSAGING_WEBHOOK_SECRET = os.getenv("MESSAGING_WEBHOOK_SECRET", "").strip()

    CALENDAR_SYNC_ENABLED = _get_bool("CALENDAR_SYNC_ENABLED", True)
    CALENDAR_HTTP_TIMEOUT_SECONDS = _get_float("CALENDAR_HTTP_TIMEOUT_SECONDS", 10.0)
    GOOGLE_CALENDAR_API_URL = os.getenv(
        "GOOGLE_CALENDAR_API_URL", "https://www.googleapis.com/calendar/v3"
    ).strip()
    MICROSOFT_GRAPH_API_URL = os.getenv(
        "MICROSOFT_GRAPH_API_URL", "https://graph.microsoft.com/v1.0"
    ).strip()

    MAINTENANCE_MODE = _get_bool("MAINTENANCE_MODE", False)
    MAINTENANCE_READ_ONLY = _get_bool("MAINTENANCE_READ_ONLY", False)
    MAINTENANCE_RETRY_AFTER_SECONDS = _get_int("MAINTENANCE_RETRY_AFTER_SECONDS", 120)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"


settings = Settings()
