import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from backend.dependencies import get_notifications, get_stats_cache
from backend.security import require_admin, require_session
from backend.services.notifications import STUDENT_ENROLLED_TOPIC, NotificationHub
from backend.services.stats_cache import STUDENT_STATS_KEY, TTLCache
from database.db import (
    add_student,
    deactivate_student,
    find_student_conflict,
    get_student_by_id,
    get_student_stats,
    list_students,
    update_student,
)

router = APIRouter()

CONFLICT_MESSAGES = {
    "reg_no": "Student with this registration number already exists.",
    "rfid_uid": "RFID card is already assigned to another student.",
}


class StudentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    reg_no: str = Field(alias="regNo")
    course: str
    rfid_uid: str = Field(alias="rfidUid")


class StudentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    reg_no: str | None = Field(default=None, alias="regNo")
    course: str | None = None
    rfid_uid: str | None = Field(default=None, alias="rfidUid")
    is_active: bool | None = Field(default=None, alias="isActive")


def _clean_student_fields(payload: BaseModel) -> dict:
    fields = payload.model_dump(exclude_none=True)
    for key in ("name", "course"):
        if key in fields:
            fields[key] = fields[key].strip()
    for key in ("reg_no", "rfid_uid"):
        if key in fields:
            fields[key] = fields[key].strip().upper()
    blank = [key for key, value in fields.items() if isinstance(value, str) and not value]
    if blank:
        raise HTTPException(status_code=400, detail=f"Fields cannot be empty: {', '.join(sorted(blank))}.")
    if "rfid_uid" in fields and len(fields["rfid_uid"]) > 64:
        raise HTTPException(status_code=400, detail="RFID UID cannot exceed 64 characters.")
    return fields


@router.get("/students")
def students(
    search: str | None = None,
    course: str | None = None,
    include_inactive: bool = False,
    limit: int = Query(default=10, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _session: dict = Depends(require_session),
):
    rows, total = list_students(
        search=search.strip() if search else None,
        course=course.strip() if course else None,
        include_inactive=include_inactive,
        limit=limit,
        offset=offset,
    )
    return {"rows": rows, "total": total, "limit": limit, "offset": offset}


@router.get("/students/stats/summary")
def student_stats(
    _session: dict = Depends(require_session),
    cache: TTLCache = Depends(get_stats_cache),
):
    stats = cache.get(STUDENT_STATS_KEY)
    if stats is None:
        stats = get_student_stats()
        cache.set(STUDENT_STATS_KEY, stats)
    return stats


@router.get("/students/{student_id}")
def student_detail(student_id: int, _session: dict = Depends(require_session)):
    student = get_student_by_id(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return student


@router.post("/students", status_code=201)
def create_student(
    payload: StudentCreate,
    _session: dict = Depends(require_admin),
    cache: TTLCache = Depends(get_stats_cache),
    notifications: NotificationHub = Depends(get_notifications),
):
    fields = _clean_student_fields(payload)

    conflict = find_student_conflict(fields["reg_no"], fields["rfid_uid"])
    if conflict:
        raise HTTPException(status_code=409, detail=CONFLICT_MESSAGES[conflict])

    try:
        student = add_student(fields["name"], fields["reg_no"], fields["course"], fields["rfid_uid"])
    except sqlite3.IntegrityError:
        # lost a race with another create
        raise HTTPException(status_code=409, detail="Student already exists.")

    cache.invalidate()
    notifications.publish(
        STUDENT_ENROLLED_TOPIC,
        {"student": student, "message": f"New student enrolled: {student['name']}"},
    )
    return student


@router.put("/students/{student_id}")
def edit_student(
    student_id: int,
    payload: StudentUpdate,
    _session: dict = Depends(require_admin),
    cache: TTLCache = Depends(get_stats_cache),
):
    if not get_student_by_id(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    fields = _clean_student_fields(payload)
    conflict = find_student_conflict(fields.get("reg_no"), fields.get("rfid_uid"), exclude_id=student_id)
    if conflict:
        raise HTTPException(status_code=409, detail=CONFLICT_MESSAGES[conflict])

    try:
        student = update_student(student_id, fields)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Student already exists.")

    cache.invalidate()
    return student


@router.delete("/students/{student_id}")
def remove_student(
    student_id: int,
    _session: dict = Depends(require_admin),
    cache: TTLCache = Depends(get_stats_cache),
):
    if not deactivate_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    cache.invalidate()
    return {"ok": True, "message": "Student deactivated"}
