from fastapi import APIRouter, Depends, HTTPException

from backend.dependencies import get_reconciler, get_stats_cache
from backend.security import require_admin
from backend.services.reconciler import ScanReconciler
from backend.services.stats_cache import TTLCache
from database.db import clear_attendance

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/admin/exams/{exam_code}/mark-absent")
def mark_absent(exam_code: str, reconciler: ScanReconciler = Depends(get_reconciler)):
    result = reconciler.mark_absentees(exam_code)
    if result["status"] == "EXAM_NOT_FOUND":
        raise HTTPException(status_code=404, detail=result["message"])
    if result["status"] in ("DISABLED", "TOO_EARLY"):
        raise HTTPException(status_code=409, detail=result["message"])
    return result


@router.post("/admin/cache/clear")
def clear_cache(cache: TTLCache = Depends(get_stats_cache)):
    cache.invalidate()
    return {"ok": True, "message": "Stats cache cleared"}


@router.post("/admin/reset/attendance")
def reset_attendance(cache: TTLCache = Depends(get_stats_cache)):
    removed = clear_attendance()
    cache.invalidate()
    return {"ok": True, "removed": removed, "message": "Attendance logs cleared"}
