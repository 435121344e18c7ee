"""
Attendance scan reconciliation.

One RFID scan goes in; one classified outcome comes out:

- UNKNOWN_CARD: no student carries the UID (no ledger write)
- REJECTED: student known but the scan is not allowed
  (EXAM_NOT_FOUND, NOT_ENROLLED, OUTSIDE_WINDOW; no ledger write)
- CREATED: first scan of the (student, day, exam-or-null) tuple
- UPDATED: later scan of an existing tuple, merged into the same record

The record's `entry_type` only tracks the most recent scan direction. It is
not a has-entered / has-exited pair, so an entry scan after an exit scan
flips the tag back to "entry" while the exit fields stay populated.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Callable, Literal, TypedDict

from backend.services.notifications import (
    ABSENTEES_MARKED_TOPIC,
    ATTENDANCE_UPDATED_TOPIC,
    NEW_ATTENDANCE_TOPIC,
    UNAUTHORIZED_SCAN_TOPIC,
    UNKNOWN_CARD_TOPIC,
)
from database.stores import DuplicateAttendanceError, StoreError

logger = logging.getLogger(__name__)

ScanOutcome = Literal["UNKNOWN_CARD", "REJECTED", "CREATED", "UPDATED"]
RejectReason = Literal["EXAM_NOT_FOUND", "NOT_ENROLLED", "OUTSIDE_WINDOW"]
EntryType = Literal["entry", "exit"]
AbsenceStatus = Literal["MARKED", "TOO_EARLY", "DISABLED", "EXAM_NOT_FOUND"]

ENTRY_TYPES = ("entry", "exit")
MAX_UID_LENGTH = 64
NON_MARKABLE_EXAM_STATUSES = {"Cancelled", "Postponed"}


class ScanResult(TypedDict):
    success: bool
    outcome: ScanOutcome
    reason: RejectReason | None
    message: str
    data: dict[str, Any]


class AbsenceResult(TypedDict):
    status: AbsenceStatus
    exam_code: str
    marked: int
    skipped: int
    cutoff: str | None
    message: str


class ScanValidationError(ValueError):
    """Malformed scan input, rejected before any lookup."""


class ScanConflictError(StoreError):
    """Insert kept colliding with concurrent writers past the retry budget."""


def normalize_uid(value: str | None) -> str:
    uid = (value or "").strip().upper()
    if not uid:
        raise ScanValidationError("rfidUid is required.")
    if len(uid) > MAX_UID_LENGTH:
        raise ScanValidationError(f"rfidUid cannot exceed {MAX_UID_LENGTH} characters.")
    return uid


def normalize_entry_type(value: str | None) -> EntryType:
    direction = (value or "").strip().lower() or "entry"
    if direction not in ENTRY_TYPES:
        raise ScanValidationError("entryType must be 'entry' or 'exit'.")
    return direction  # type: ignore[return-value]


def normalize_exam_code(value: str | None) -> str | None:
    code = (value or "").strip().upper()
    return code or None


def resolve_scan_time(
    value: str | int | float | datetime | None,
    *,
    tz: tzinfo,
    clock: Callable[[], datetime],
) -> datetime:
    """
    Resolve the scan instant in the civil timezone `tz`.

    Missing timestamps use `clock()`. Numbers are epoch milliseconds. Offset-aware
    values are converted to `tz`; naive values are read as wall-clock time in `tz`.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        stamp = clock()
    elif isinstance(value, datetime):
        stamp = value
    elif isinstance(value, bool):
        raise ScanValidationError(f"timestamp must be ISO-8601 or epoch milliseconds, got {value!r}.")
    elif isinstance(value, (int, float)):
        try:
            stamp = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ScanValidationError(f"timestamp {value!r} is out of range.") from exc
    else:
        text = value.strip()
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        try:
            stamp = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ScanValidationError(f"timestamp must be ISO-8601, got {value!r}.") from exc

    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=tz)
    return stamp.astimezone(tz)


def _parse_clock(value: str) -> time:
    text = str(value).strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid time of day: {value!r}")


def exam_window(exam: dict[str, Any], tz: tzinfo) -> tuple[datetime, datetime]:
    """Exam start and end instants: exam date combined with its times of day."""
    exam_day = date.fromisoformat(str(exam["exam_date"])[:10])
    start = datetime.combine(exam_day, _parse_clock(exam["start_time"]), tzinfo=tz)
    end = datetime.combine(exam_day, _parse_clock(exam["end_time"]), tzinfo=tz)
    return start, end


def _find_enrollment(exam: dict[str, Any], student_id: int) -> dict[str, Any] | None:
    for enrollment in exam.get("enrolled_students") or []:
        if enrollment.get("student_id") == student_id:
            return enrollment
    return None


def _build_scan_result(
    *,
    success: bool,
    outcome: ScanOutcome,
    message: str,
    data: dict[str, Any],
    reason: RejectReason | None = None,
) -> ScanResult:
    return {
        "success": success,
        "outcome": outcome,
        "reason": reason,
        "message": message,
        "data": data,
    }


class ScanReconciler:
    """
    Decide and apply the ledger effect of a single RFID scan.

    Collaborators are duck-typed:
    - directory: find_student_by_rfid(uid), find_active_exam_by_code(code),
      find_exam_by_code(code)
    - ledger: find_record(student_id, day, exam_id), insert_record(record),
      update_record(record_id, fields); insert raises DuplicateAttendanceError
      when the tuple already exists
    - notifier: publish(topic, payload)
    - cache: invalidate(key=None)
    """

    def __init__(
        self,
        directory,
        ledger,
        notifier=None,
        cache=None,
        *,
        tz: tzinfo,
        clock: Callable[[], datetime] | None = None,
        max_conflict_retries: int = 3,
    ):
        self.directory = directory
        self.ledger = ledger
        self.notifier = notifier
        self.cache = cache
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(tz))
        self.max_conflict_retries = max(0, int(max_conflict_retries))

    def reconcile(
        self,
        rfid_uid: str | None,
        timestamp: str | int | float | datetime | None = None,
        exam_code: str | None = None,
        entry_type: str | None = None,
    ) -> ScanResult:
        uid = normalize_uid(rfid_uid)
        direction = normalize_entry_type(entry_type)
        code = normalize_exam_code(exam_code)
        scan_time = resolve_scan_time(timestamp, tz=self.tz, clock=self._clock)
        echo = {
            "rfid_uid": uid,
            "timestamp": scan_time.isoformat(timespec="seconds"),
            "exam_code": code,
            "entry_type": direction,
        }

        student = self.directory.find_student_by_rfid(uid)
        if student is None:
            logger.warning("Unknown RFID card scanned: %s at %s", uid, echo["timestamp"])
            self._notify(UNKNOWN_CARD_TOPIC, {**echo, "message": "Unknown RFID card detected"})
            return _build_scan_result(
                success=False,
                outcome="UNKNOWN_CARD",
                message="Unknown RFID card. Please enroll the student first.",
                data=echo,
            )

        exam = None
        enrollment = None
        if code:
            exam = self.directory.find_active_exam_by_code(code)
            if exam is None:
                return self._reject(
                    "EXAM_NOT_FOUND",
                    f"Exam {code} was not found or is not open for scanning.",
                    echo,
                    student,
                )

            enrollment = _find_enrollment(exam, student["id"])
            if enrollment is None:
                message = f"{student['name']} is not enrolled in exam {code}."
                logger.warning("Unauthorized scan: %s (%s) for exam %s", student["name"], uid, code)
                self._notify(
                    UNAUTHORIZED_SCAN_TOPIC,
                    {
                        **echo,
                        "student_id": student["id"],
                        "student_name": student["name"],
                        "exam_name": exam.get("exam_name"),
                        "message": message,
                    },
                )
                return self._reject("NOT_ENROLLED", message, echo, student, exam)

            window_problem = self._check_window(exam, scan_time, direction)
            if window_problem:
                return self._reject("OUTSIDE_WINDOW", window_problem, echo, student, exam)

        outcome, record = self._write(student, exam, enrollment, scan_time, direction)
        message = self._describe(outcome, student, code, direction)
        self._invalidate_cache()
        self._notify(
            NEW_ATTENDANCE_TOPIC if outcome == "CREATED" else ATTENDANCE_UPDATED_TOPIC,
            {
                "attendance": record,
                "student_name": student["name"],
                "exam_code": code,
                "entry_type": direction,
                "message": message,
            },
        )
        return _build_scan_result(success=True, outcome=outcome, message=message, data=record)

    def mark_absentees(self, exam_code: str | None, now: datetime | None = None) -> AbsenceResult:
        """
        Write an `absent` record for every enrolled student with no record
        for the exam day, once the exam's absent-marking time has passed.
        Existing records are left alone.
        """
        code = normalize_exam_code(exam_code)
        if not code:
            raise ScanValidationError("Exam code is required.")

        exam = self.directory.find_exam_by_code(code)
        if exam is None:
            return self._absence_result("EXAM_NOT_FOUND", code, message=f"Exam {code} not found.")
        if not exam.get("auto_mark_absent") or exam.get("status") in NON_MARKABLE_EXAM_STATUSES:
            return self._absence_result(
                "DISABLED",
                code,
                message=f"Automatic absence marking is not enabled for {code}.",
            )

        start, _ = exam_window(exam, self.tz)
        cutoff = start + timedelta(minutes=max(0, int(exam.get("absent_marking_minutes") or 0)))
        current = resolve_scan_time(now, tz=self.tz, clock=self._clock)
        if current < cutoff:
            return self._absence_result(
                "TOO_EARLY",
                code,
                cutoff=cutoff,
                message=f"Absences for {code} can be marked from {cutoff:%Y-%m-%d %H:%M}.",
            )

        day = start.date().isoformat()
        marked = 0
        skipped = 0
        for enrollment in exam.get("enrolled_students") or []:
            student_id = enrollment["student_id"]
            if self.ledger.find_record(student_id, day, exam["id"]) is not None:
                skipped += 1
                continue
            record = {
                "student_id": student_id,
                "exam_id": exam["id"],
                "rfid_uid": enrollment.get("rfid_uid") or "",
                "date": day,
                "day_of_week": start.strftime("%A"),
                "status": "absent",
                "entry_type": None,
                "seat_number": enrollment.get("seat_number"),
                "exam_code": exam["exam_code"],
                "exam_name": exam.get("exam_name"),
                "exam_subject": exam.get("subject"),
            }
            try:
                self.ledger.insert_record(record)
            except DuplicateAttendanceError:
                # a scan landed between the lookup and the insert
                skipped += 1
                continue
            marked += 1

        message = f"Marked {marked} student(s) absent for {code}."
        if marked:
            self._invalidate_cache()
            self._notify(
                ABSENTEES_MARKED_TOPIC,
                {"exam_code": code, "marked": marked, "date": day, "message": message},
            )
        logger.info("Absence marking for %s: %d marked, %d skipped", code, marked, skipped)
        return self._absence_result("MARKED", code, marked=marked, skipped=skipped, cutoff=cutoff, message=message)

    # -----------------------------
    # Policy
    # -----------------------------
    def _check_window(self, exam: dict[str, Any], scan_time: datetime, direction: EntryType) -> str | None:
        start, end = exam_window(exam, self.tz)
        grace_minutes = max(0, int(exam.get("late_entry_grace_minutes") or 0))
        allowed_start = start - timedelta(minutes=grace_minutes)
        code = exam.get("exam_code")

        if direction == "entry":
            if scan_time < allowed_start:
                return (
                    f"Entry for {code} opens at {allowed_start:%H:%M} "
                    f"({grace_minutes} min before the {start:%H:%M} start)."
                )
            if not exam.get("allow_late_entry", True) and scan_time > start:
                return f"Late entry is not allowed for {code}; the exam started at {start:%H:%M}."
        elif scan_time > end:
            logger.info(
                "Late exit accepted for exam %s: scan at %s, exam ended %s",
                code,
                scan_time.isoformat(timespec="seconds"),
                end.isoformat(timespec="seconds"),
            )
        return None

    # -----------------------------
    # Ledger merge
    # -----------------------------
    def _write(
        self,
        student: dict[str, Any],
        exam: dict[str, Any] | None,
        enrollment: dict[str, Any] | None,
        scan_time: datetime,
        direction: EntryType,
    ) -> tuple[ScanOutcome, dict[str, Any]]:
        day = scan_time.date().isoformat()
        exam_id = exam["id"] if exam else None

        for attempt in range(self.max_conflict_retries + 1):
            existing = self.ledger.find_record(student["id"], day, exam_id)
            if existing is not None:
                fields = _merge_scan(existing, scan_time, direction)
                return "UPDATED", self.ledger.update_record(existing["id"], fields)

            record = _new_record(student, exam, enrollment, scan_time, direction)
            try:
                return "CREATED", self.ledger.insert_record(record)
            except DuplicateAttendanceError:
                logger.info(
                    "Concurrent first scan for student %s on %s (exam %s); retrying as update, attempt %d",
                    student["id"],
                    day,
                    exam_id,
                    attempt + 1,
                )

        raise ScanConflictError(
            f"Could not reconcile scan for student {student['id']} on {day}: "
            f"record kept conflicting after {self.max_conflict_retries} retries."
        )

    def _reject(
        self,
        reason: RejectReason,
        message: str,
        echo: dict[str, Any],
        student: dict[str, Any],
        exam: dict[str, Any] | None = None,
    ) -> ScanResult:
        data = {
            **echo,
            "reason": reason,
            "student_id": student["id"],
            "student_name": student["name"],
            "student_reg_no": student.get("reg_no"),
        }
        if exam is not None:
            data["exam_name"] = exam.get("exam_name")
            data["exam_start"] = exam.get("start_time")
            data["exam_end"] = exam.get("end_time")
        return _build_scan_result(
            success=False,
            outcome="REJECTED",
            reason=reason,
            message=message,
            data=data,
        )

    @staticmethod
    def _describe(outcome: ScanOutcome, student: dict[str, Any], code: str | None, direction: EntryType) -> str:
        name = student["name"]
        if code:
            if direction == "exit":
                return f"{name} checked out of {code}"
            if outcome == "CREATED":
                return f"{name} checked in for {code}"
            return f"{name} scanned in again for {code}"
        if direction == "exit":
            return f"{name} checked out"
        if outcome == "CREATED":
            return f"{name} marked present"
        return f"{name} scanned again today"

    def _absence_result(
        self,
        status: AbsenceStatus,
        code: str,
        *,
        marked: int = 0,
        skipped: int = 0,
        cutoff: datetime | None = None,
        message: str,
    ) -> AbsenceResult:
        return {
            "status": status,
            "exam_code": code,
            "marked": marked,
            "skipped": skipped,
            "cutoff": cutoff.isoformat(timespec="seconds") if cutoff else None,
            "message": message,
        }

    def _invalidate_cache(self) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate()
        except Exception:
            logger.warning("Stats cache invalidation failed", exc_info=True)

    def _notify(self, topic: str, payload: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(topic, payload)
        except Exception:
            logger.warning("Notification publish failed for %s", topic, exc_info=True)


def _scan_fields(scan_time: datetime) -> tuple[str, str]:
    return scan_time.isoformat(timespec="seconds"), scan_time.strftime("%H:%M:%S")


def _merge_scan(existing: dict[str, Any], scan_time: datetime, direction: EntryType) -> dict[str, Any]:
    stamp, clock_time = _scan_fields(scan_time)
    if direction == "entry":
        fields: dict[str, Any] = {"entry_timestamp": stamp, "entry_time": clock_time, "entry_type": "entry"}
    else:
        fields = {"exit_timestamp": stamp, "exit_time": clock_time, "entry_type": "exit"}
    if existing.get("status") == "absent":
        fields["status"] = "late"
    return fields


def _new_record(
    student: dict[str, Any],
    exam: dict[str, Any] | None,
    enrollment: dict[str, Any] | None,
    scan_time: datetime,
    direction: EntryType,
) -> dict[str, Any]:
    stamp, clock_time = _scan_fields(scan_time)
    record: dict[str, Any] = {
        "student_id": student["id"],
        "exam_id": exam["id"] if exam else None,
        "rfid_uid": student["rfid_uid"],
        "date": scan_time.date().isoformat(),
        "day_of_week": scan_time.strftime("%A"),
        "status": "present",
        "entry_type": direction,
        "entry_timestamp": None,
        "entry_time": None,
        "exit_timestamp": None,
        "exit_time": None,
        "seat_number": None,
    }
    if direction == "entry":
        record["entry_timestamp"] = stamp
        record["entry_time"] = clock_time
    else:
        record["exit_timestamp"] = stamp
        record["exit_time"] = clock_time

    if exam is not None:
        record["exam_code"] = exam["exam_code"]
        record["exam_name"] = exam.get("exam_name")
        record["exam_subject"] = exam.get("subject")
        if enrollment and enrollment.get("seat_number"):
            record["seat_number"] = enrollment["seat_number"]
    return record
