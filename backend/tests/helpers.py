from datetime import datetime

import backend.config as config
import database.db as db


def today() -> str:
    return datetime.now(config.TIMEZONE).date().isoformat()


def insert_student(*, name: str = "Test Student", reg_no: str = "REG001", course: str = "BSc Maths",
                   rfid_uid: str = "ABCD1234") -> dict:
    return db.add_student(name, reg_no, course, rfid_uid)


def insert_exam(*, exam_code: str = "MATH101", exam_date: str | None = None, **overrides) -> dict:
    fields = {
        "exam_code": exam_code,
        "exam_name": "Calculus I",
        "subject": "Mathematics",
        "course": "BSc Maths",
        "exam_date": exam_date or today(),
        "start_time": "09:00",
        "end_time": "11:00",
        "late_entry_grace_minutes": 15,
    }
    fields.update(overrides)
    return db.create_exam(fields, created_by=None)
