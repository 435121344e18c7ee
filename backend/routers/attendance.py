from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from backend.config import TIMEZONE
from backend.dependencies import get_reconciler, get_stats_cache
from backend.security import require_scanner, require_session
from backend.services.reconciler import ScanReconciler, ScanResult, ScanValidationError
from backend.services.stats_cache import ATTENDANCE_STATS_KEY, TTLCache
from database.db import get_attendance_stats, list_attendance

router = APIRouter()

ATTENDANCE_STATUSES = ("present", "late", "absent", "excused")
TREND_DAYS = 7
SCAN_PATH = "/attendance/scan"


class ScanRequest(BaseModel):
    """Scanner payload; devices send camelCase, dashboards may send snake_case."""

    model_config = ConfigDict(populate_by_name=True)

    rfid_uid: str | None = Field(default=None, alias="rfidUid")
    timestamp: str | int | float | None = None
    exam_code: str | None = Field(default=None, alias="examId")
    entry_type: str | None = Field(default=None, alias="entryType")


def invalid_scan_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "outcome": "INVALID",
            "reason": None,
            "message": message,
            "data": None,
        },
    )


def _http_status_for(result: ScanResult) -> int:
    outcome = result["outcome"]
    if outcome == "CREATED":
        return 201
    if outcome == "UPDATED":
        return 200
    if outcome == "UNKNOWN_CARD":
        return 404
    if result["reason"] == "EXAM_NOT_FOUND":
        return 404
    return 403


@router.post(SCAN_PATH)
def scan(
    payload: ScanRequest,
    response: Response,
    _scanner: dict = Depends(require_scanner),
    reconciler: ScanReconciler = Depends(get_reconciler),
):
    try:
        result = reconciler.reconcile(
            payload.rfid_uid,
            timestamp=payload.timestamp,
            exam_code=payload.exam_code,
            entry_type=payload.entry_type,
        )
    except ScanValidationError as exc:
        return invalid_scan_response(str(exc))

    response.status_code = _http_status_for(result)
    return result


@router.get("/attendance")
def attendance(
    date: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    student_id: int | None = None,
    exam_code: str | None = None,
    course: str | None = None,
    status: str | None = None,
    limit: int = Query(default=10, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _session: dict = Depends(require_session),
):
    if status and status not in ATTENDANCE_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status filter.")

    rows, total = list_attendance(
        start_date=date or start_date,
        end_date=date or end_date,
        student_id=student_id,
        exam_code=exam_code.strip().upper() if exam_code else None,
        course=course,
        status=status,
        limit=limit,
        offset=offset,
    )
    return {"rows": rows, "total": total, "limit": limit, "offset": offset}


@router.get("/attendance/stats")
def attendance_stats(
    _session: dict = Depends(require_session),
    cache: TTLCache = Depends(get_stats_cache),
):
    cached = cache.get(ATTENDANCE_STATS_KEY)
    if cached is not None:
        return {**cached, "cached": True}

    today = datetime.now(TIMEZONE).date()
    # weeks start on Sunday
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    trend_start = today - timedelta(days=TREND_DAYS - 1)

    stats = get_attendance_stats(
        today=today.isoformat(),
        week_start=week_start.isoformat(),
        week_end=(week_start + timedelta(days=6)).isoformat(),
        trend_start=trend_start.isoformat(),
    )
    daily_counts = stats.pop("daily_counts")
    trend = []
    for offset in range(TREND_DAYS):
        day = trend_start + timedelta(days=offset)
        trend.append({
            "date": day.isoformat(),
            "day": day.strftime("%a"),
            "count": daily_counts.get(day.isoformat(), 0),
        })
    stats["daily_trend"] = trend
    stats["generated_at"] = datetime.now(TIMEZONE).isoformat(timespec="seconds")

    cache.set(ATTENDANCE_STATS_KEY, stats)
    return {**stats, "cached": False}
