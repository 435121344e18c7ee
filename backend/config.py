import os
import secrets
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("EXAMSCAN_DB_PATH", BASE_DIR / "database" / "examscan.db"))
DB_TIMEOUT_SECONDS = float(os.getenv("EXAMSCAN_DB_TIMEOUT_SECONDS", "5"))
DEVICE_SECRET = os.getenv("EXAMSCAN_DEVICE_SECRET", "examscan-device-secret-change-me").strip()
ADMIN_USERNAME = os.getenv("EXAMSCAN_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("EXAMSCAN_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = (
    os.getenv("EXAMSCAN_SIGNING_KEY", "").strip()
    or DEVICE_SECRET
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("EXAMSCAN_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("EXAMSCAN_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_timezone(value: str | None, fallback: str) -> ZoneInfo:
    name = (value or "").strip() or fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(fallback)


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("EXAMSCAN_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("EXAMSCAN_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("EXAMSCAN_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Device-Secret"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("EXAMSCAN_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("EXAMSCAN_ENABLE_DEBUG_ENDPOINTS"), False)

# Civil timezone used for calendar-day keys and exam windows.
TIMEZONE = _parse_timezone(os.getenv("EXAMSCAN_TIMEZONE"), "Africa/Harare")

STATS_CACHE_TTL_SECONDS = max(
    0,
    int(os.getenv("EXAMSCAN_STATS_CACHE_TTL_SECONDS", "30")),
)
DEVICE_COMMAND_TTL_SECONDS = max(
    1,
    int(os.getenv("EXAMSCAN_DEVICE_COMMAND_TTL_SECONDS", "300")),
)
DEVICE_STATUS_RETENTION_SECONDS = max(
    1,
    int(os.getenv("EXAMSCAN_DEVICE_STATUS_RETENTION_SECONDS", "86400")),
)
SCAN_CONFLICT_RETRIES = max(
    0,
    int(os.getenv("EXAMSCAN_SCAN_CONFLICT_RETRIES", "3")),
)
NOTIFICATION_HISTORY_SIZE = max(
    1,
    int(os.getenv("EXAMSCAN_NOTIFICATION_HISTORY_SIZE", "50")),
)

DEFAULT_GRACE_MINUTES = 15
DEFAULT_ABSENT_MARKING_MINUTES = 30
