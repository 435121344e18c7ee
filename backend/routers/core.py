from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    DB_PATH,
    DEFAULT_ABSENT_MARKING_MINUTES,
    DEFAULT_GRACE_MINUTES,
    DEVICE_COMMAND_TTL_SECONDS,
    ENABLE_DEBUG_ENDPOINTS,
    SCAN_CONFLICT_RETRIES,
    STATS_CACHE_TTL_SECONDS,
    TIMEZONE,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "timezone": TIMEZONE.key,
        "default_late_entry_grace_minutes": DEFAULT_GRACE_MINUTES,
        "default_absent_marking_minutes": DEFAULT_ABSENT_MARKING_MINUTES,
        "stats_cache_ttl_seconds": STATS_CACHE_TTL_SECONDS,
        "device_command_ttl_seconds": DEVICE_COMMAND_TTL_SECONDS,
        "scan_conflict_retries": SCAN_CONFLICT_RETRIES,
    }
