import os

import pytz
from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_list(value: str | None, default: str) -> list[str]:
    raw = default if value is None else value
    return [item.strip() for item in raw.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./scheduling.db")
STORE_TIMEOUT_SECONDS = _get_int(os.getenv("STORE_TIMEOUT_SECONDS"), 5)

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/Buenos_Aires")

MIN_ADVANCE_HOURS = _get_int(os.getenv("MIN_ADVANCE_HOURS"), 24)
MAX_ADVANCE_DAYS = _get_int(os.getenv("MAX_ADVANCE_DAYS"), 90)
MAX_APPOINTMENT_HOURS = _get_int(os.getenv("MAX_APPOINTMENT_HOURS"), 8)
MAX_EXPANSION_DAYS = _get_int(os.getenv("MAX_EXPANSION_DAYS"), 366)

BLOCKING_SEVERITIES = _get_list(os.getenv("BLOCKING_SEVERITIES"), "critical,high")
CHECK_CLIENT_CONFLICTS = _get_bool(os.getenv("CHECK_CLIENT_CONFLICTS"), default=True)

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), "http://localhost:4200")

SEVERITY_LEVELS = ("critical", "high", "medium", "low")


def validate_runtime_config() -> None:
    if DEFAULT_TIMEZONE not in pytz.all_timezones_set:
        raise RuntimeError(f"DEFAULT_TIMEZONE '{DEFAULT_TIMEZONE}' is not a valid IANA zone.")
    if not BLOCKING_SEVERITIES:
        raise RuntimeError("BLOCKING_SEVERITIES must name at least one severity.")
    unknown = set(BLOCKING_SEVERITIES) - set(SEVERITY_LEVELS)
    if unknown:
        raise RuntimeError(f"BLOCKING_SEVERITIES has unknown severities: {sorted(unknown)}")
