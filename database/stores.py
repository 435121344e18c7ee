"""
Directory Store and Attendance Ledger bound to the SQLite database.

The scan reconciler only talks to these two objects, so tests can swap in
in-memory fakes with the same method names.
"""
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from database import db


class StoreError(Exception):
    """Persistence failure the caller may retry."""


class StoreUnavailableError(StoreError):
    pass


class DuplicateAttendanceError(Exception):
    """Insert hit the one-record-per-(student, day, exam) unique index."""


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.IntegrityError as exc:
        if "UNIQUE" in str(exc).upper():
            raise DuplicateAttendanceError(f"{action}: {exc}") from exc
        raise StoreError(f"{action} failed: {exc}") from exc
    except sqlite3.Error as exc:
        raise StoreUnavailableError(f"{action} failed: {exc}") from exc


class SqliteDirectoryStore:
    def find_student_by_rfid(self, rfid_uid: str) -> dict[str, Any] | None:
        with _translate_errors("Student lookup"):
            return db.find_student_by_rfid(rfid_uid)

    def find_active_exam_by_code(self, exam_code: str) -> dict[str, Any] | None:
        with _translate_errors("Exam lookup"):
            return db.find_active_exam_by_code(exam_code)

    def find_exam_by_code(self, exam_code: str) -> dict[str, Any] | None:
        with _translate_errors("Exam lookup"):
            return db.get_exam_by_code(exam_code)


class SqliteAttendanceLedger:
    def find_record(self, student_id: int, day: str, exam_id: int | None) -> dict[str, Any] | None:
        with _translate_errors("Attendance lookup"):
            return db.find_attendance_record(student_id, day, exam_id)

    def insert_record(self, record: dict[str, Any]) -> dict[str, Any]:
        with _translate_errors("Attendance insert"):
            return db.insert_attendance_record(record)

    def update_record(self, record_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        with _translate_errors("Attendance update"):
            updated = db.update_attendance_record(record_id, fields)
        if updated is None:
            raise StoreError(f"Attendance record {record_id} disappeared during update.")
        return updated
