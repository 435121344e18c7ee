import re
import sqlite3
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from backend.config import DEFAULT_ABSENT_MARKING_MINUTES, DEFAULT_GRACE_MINUTES, TIMEZONE
from backend.dependencies import get_notifications
from backend.security import require_admin, require_session
from backend.services.exam_status import ExamStatusError, check_status_transition
from backend.services.notifications import EXAM_STATUS_TOPIC, NotificationHub
from database.db import (
    assign_invigilator,
    create_exam,
    deactivate_exam,
    enroll_student,
    get_exam_attendance_summary,
    get_exam_by_code,
    get_student_by_id,
    get_user_by_id,
    list_attendance,
    list_exams,
    list_upcoming_exams,
    remove_invigilator,
    set_exam_status,
    unenroll_student,
    update_exam,
)

router = APIRouter()

EXAM_CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,20}$")
CLOCK_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
EXAM_TYPES = ("Midterm", "Final", "Quiz", "Assignment", "Practical", "Viva", "Other")
INVIGILATOR_ROLES = ("Chief Invigilator", "Assistant Invigilator")


class ExamCreate(BaseModel):
    exam_code: str
    exam_name: str = Field(max_length=200)
    subject: str = Field(max_length=100)
    course: str = Field(max_length=100)
    academic_year: str | None = None
    semester: str | None = None
    exam_type: str = "Final"
    exam_date: date
    start_time: str
    end_time: str
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    venue_room: str | None = None
    venue_building: str | None = None
    instructions: str | None = Field(default=None, max_length=1000)
    allow_late_entry: bool = True
    late_entry_grace_minutes: int = Field(default=DEFAULT_GRACE_MINUTES, ge=0, le=60)
    require_exit_scan: bool = False
    auto_mark_absent: bool = True
    absent_marking_minutes: int = Field(default=DEFAULT_ABSENT_MARKING_MINUTES, ge=0)


class ExamUpdate(BaseModel):
    exam_code: str | None = None
    exam_name: str | None = Field(default=None, max_length=200)
    subject: str | None = Field(default=None, max_length=100)
    course: str | None = Field(default=None, max_length=100)
    academic_year: str | None = None
    semester: str | None = None
    exam_type: str | None = None
    exam_date: date | None = None
    start_time: str | None = None
    end_time: str | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    venue_room: str | None = None
    venue_building: str | None = None
    instructions: str | None = Field(default=None, max_length=1000)
    allow_late_entry: bool | None = None
    late_entry_grace_minutes: int | None = Field(default=None, ge=0, le=60)
    require_exit_scan: bool | None = None
    auto_mark_absent: bool | None = None
    absent_marking_minutes: int | None = Field(default=None, ge=0)


class EnrollmentCreate(BaseModel):
    student_id: int
    seat_number: str | None = None


class InvigilatorAssign(BaseModel):
    user_id: int
    role: str = "Assistant Invigilator"


class StatusChange(BaseModel):
    status: str


def _normalize_clock(value: str, label: str) -> str:
    text = value.strip()
    if not CLOCK_PATTERN.match(text):
        raise HTTPException(status_code=400, detail=f"{label} must be HH:MM.")
    hours, minutes = text.split(":")
    return f"{int(hours):02d}:{minutes}"


def _clean_exam_fields(fields: dict, *, current: dict | None = None) -> dict:
    """Normalize writable exam fields; `current` supplies values for a partial update."""
    for key in ("exam_name", "subject", "course", "academic_year", "semester", "venue_room", "venue_building"):
        if isinstance(fields.get(key), str):
            fields[key] = fields[key].strip()
            if not fields[key] and key in ("exam_name", "subject", "course"):
                raise HTTPException(status_code=400, detail=f"{key} cannot be empty.")

    if "exam_code" in fields:
        fields["exam_code"] = fields["exam_code"].strip().upper()
        if not EXAM_CODE_PATTERN.match(fields["exam_code"]):
            raise HTTPException(
                status_code=400,
                detail="Exam code must be 3-20 uppercase letters or digits.",
            )
    if "exam_type" in fields and fields["exam_type"] not in EXAM_TYPES:
        raise HTTPException(status_code=400, detail=f"Exam type must be one of: {', '.join(EXAM_TYPES)}.")
    if "exam_date" in fields:
        fields["exam_date"] = fields["exam_date"].isoformat()
    if "start_time" in fields:
        fields["start_time"] = _normalize_clock(fields["start_time"], "Start time")
    if "end_time" in fields:
        fields["end_time"] = _normalize_clock(fields["end_time"], "End time")

    start_time = fields.get("start_time") or (current or {}).get("start_time")
    end_time = fields.get("end_time") or (current or {}).get("end_time")
    if start_time and end_time and end_time <= start_time:
        raise HTTPException(status_code=400, detail="End time must be after start time.")
    return fields


def _load_exam(exam_code: str) -> dict:
    exam = get_exam_by_code(exam_code.strip().upper())
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found.")
    return exam


def _is_assigned(exam: dict, session: dict) -> bool:
    return any(inv["user_id"] == session.get("uid") for inv in exam.get("invigilators") or [])


def _ensure_exam_access(exam: dict, session: dict) -> None:
    if session.get("role") == "invigilator" and not _is_assigned(exam, session):
        raise HTTPException(status_code=403, detail="Access denied. You are not assigned to this exam.")


def _scoped_invigilator(session: dict) -> int | None:
    return session.get("uid") if session.get("role") == "invigilator" else None


@router.get("/exams")
def exams(
    status: str | None = None,
    course: str | None = None,
    search: str | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    limit: int = Query(default=10, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: dict = Depends(require_session),
):
    rows, total = list_exams(
        status=status,
        course=course,
        search=search.strip() if search else None,
        invigilator_id=_scoped_invigilator(session),
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return {"rows": rows, "total": total, "limit": limit, "offset": offset}


@router.get("/exams/upcoming")
def upcoming_exams(
    limit: int = Query(default=5, ge=1, le=50),
    session: dict = Depends(require_session),
):
    today = datetime.now(TIMEZONE).date().isoformat()
    return list_upcoming_exams(today, limit=limit, invigilator_id=_scoped_invigilator(session))


@router.get("/exams/{exam_code}")
def exam_detail(exam_code: str, session: dict = Depends(require_session)):
    exam = _load_exam(exam_code)
    _ensure_exam_access(exam, session)
    return exam


@router.post("/exams", status_code=201)
def add_exam(payload: ExamCreate, session: dict = Depends(require_admin)):
    fields = _clean_exam_fields(payload.model_dump())
    if get_exam_by_code(fields["exam_code"], include_inactive=True, with_members=False):
        raise HTTPException(status_code=409, detail="Exam code already exists.")

    try:
        return create_exam(fields, created_by=session.get("uid"))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Exam code already exists.")


@router.put("/exams/{exam_code}")
def edit_exam(exam_code: str, payload: ExamUpdate, session: dict = Depends(require_admin)):
    exam = _load_exam(exam_code)
    fields = _clean_exam_fields(payload.model_dump(exclude_none=True), current=exam)

    new_code = fields.get("exam_code")
    if new_code and new_code != exam["exam_code"]:
        if get_exam_by_code(new_code, include_inactive=True, with_members=False):
            raise HTTPException(status_code=409, detail="Exam code already exists.")

    try:
        update_exam(exam["id"], fields, modified_by=session.get("uid"))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Exam code already exists.")
    return _load_exam(new_code or exam["exam_code"])


@router.delete("/exams/{exam_code}")
def remove_exam(exam_code: str, session: dict = Depends(require_admin)):
    exam = _load_exam(exam_code)
    deactivate_exam(exam["id"], modified_by=session.get("uid"))
    return {"ok": True, "message": "Exam deleted"}


@router.post("/exams/{exam_code}/students", status_code=201)
def enroll_exam_student(
    exam_code: str,
    payload: EnrollmentCreate,
    _session: dict = Depends(require_admin),
):
    exam = _load_exam(exam_code)
    student = get_student_by_id(payload.student_id)
    if not student or not student["is_active"]:
        raise HTTPException(status_code=404, detail="Student not found.")

    seat = payload.seat_number.strip() if payload.seat_number else None
    try:
        enroll_student(exam["id"], student["id"], seat or None)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Student is already enrolled in this exam.")
    return _load_exam(exam["exam_code"])["enrolled_students"]


@router.delete("/exams/{exam_code}/students/{student_id}")
def unenroll_exam_student(exam_code: str, student_id: int, _session: dict = Depends(require_admin)):
    exam = _load_exam(exam_code)
    if not unenroll_student(exam["id"], student_id):
        raise HTTPException(status_code=404, detail="Student is not enrolled in this exam.")
    return {"ok": True, "message": "Student removed from exam"}


@router.post("/exams/{exam_code}/invigilators", status_code=201)
def add_exam_invigilator(
    exam_code: str,
    payload: InvigilatorAssign,
    _session: dict = Depends(require_admin),
):
    if payload.role not in INVIGILATOR_ROLES:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(INVIGILATOR_ROLES)}.")

    exam = _load_exam(exam_code)
    user = get_user_by_id(payload.user_id)
    if not user or not user["is_active"] or user["role"] != "invigilator":
        raise HTTPException(status_code=404, detail="Invigilator not found or invalid.")

    try:
        assign_invigilator(exam["id"], user["id"], payload.role)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Invigilator is already assigned to this exam.")
    return _load_exam(exam["exam_code"])["invigilators"]


@router.delete("/exams/{exam_code}/invigilators/{user_id}")
def remove_exam_invigilator(exam_code: str, user_id: int, _session: dict = Depends(require_admin)):
    exam = _load_exam(exam_code)
    if not remove_invigilator(exam["id"], user_id):
        raise HTTPException(status_code=404, detail="Invigilator is not assigned to this exam.")
    return {"ok": True, "message": "Invigilator removed"}


@router.put("/exams/{exam_code}/status")
def change_exam_status(
    exam_code: str,
    payload: StatusChange,
    session: dict = Depends(require_session),
    notifications: NotificationHub = Depends(get_notifications),
):
    exam = _load_exam(exam_code)
    target = payload.status.strip()
    try:
        check_status_transition(
            exam["status"],
            target,
            role=session.get("role", ""),
            is_assigned=_is_assigned(exam, session),
        )
    except ExamStatusError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    set_exam_status(exam["id"], target, modified_by=session.get("uid"))
    notifications.publish(
        EXAM_STATUS_TOPIC,
        {
            "exam_code": exam["exam_code"],
            "previous_status": exam["status"],
            "status": target,
            "changed_by": session.get("sub"),
        },
    )
    return {"exam_code": exam["exam_code"], "status": target, "message": f"Exam status updated to {target}"}


@router.get("/exams/{exam_code}/attendance")
def exam_attendance(exam_code: str, session: dict = Depends(require_session)):
    exam = _load_exam(exam_code)
    _ensure_exam_access(exam, session)
    rows, _ = list_attendance(exam_id=exam["id"], limit=1000)
    return {"summary": get_exam_attendance_summary(exam), "rows": rows}
