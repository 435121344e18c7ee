import hashlib
import hmac
import secrets
import sqlite3
from typing import Any

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    DB_TIMEOUT_SECONDS,
    DEFAULT_ABSENT_MARKING_MINUTES,
    DEFAULT_GRACE_MINUTES,
)
from backend.services.exam_status import is_scannable


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=DB_TIMEOUT_SECONDS, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _row_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (username, password_hash, full_name, role)
        VALUES (?, ?, ?, 'admin')
        """,
        (username, _hash_password(password), "Administrator"),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        reg_no TEXT NOT NULL UNIQUE,
        course TEXT NOT NULL,
        rfid_uid TEXT NOT NULL UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1,
        enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        full_name TEXT,
        role TEXT NOT NULL DEFAULT 'invigilator'
            CHECK (role IN ('admin', 'invigilator')),
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS exams (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        exam_code TEXT NOT NULL UNIQUE,
        exam_name TEXT NOT NULL,
        subject TEXT NOT NULL,
        course TEXT NOT NULL,
        academic_year TEXT,
        semester TEXT,
        exam_type TEXT NOT NULL DEFAULT 'Final',
        exam_date TEXT NOT NULL,          -- YYYY-MM-DD
        start_time TEXT NOT NULL,         -- HH:MM
        end_time TEXT NOT NULL,           -- HH:MM
        duration_minutes INTEGER,
        venue_room TEXT,
        venue_building TEXT,
        instructions TEXT,
        status TEXT NOT NULL DEFAULT 'Scheduled',
        allow_late_entry INTEGER NOT NULL DEFAULT 1,
        late_entry_grace_minutes INTEGER NOT NULL DEFAULT {DEFAULT_GRACE_MINUTES},
        require_exit_scan INTEGER NOT NULL DEFAULT 0,
        auto_mark_absent INTEGER NOT NULL DEFAULT 1,
        absent_marking_minutes INTEGER NOT NULL DEFAULT {DEFAULT_ABSENT_MARKING_MINUTES},
        is_active INTEGER NOT NULL DEFAULT 1,
        created_by INTEGER REFERENCES users(id),
        last_modified_by INTEGER REFERENCES users(id),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS exam_enrollments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        exam_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        seat_number TEXT,
        enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (exam_id) REFERENCES exams(id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES students(id),
        UNIQUE(exam_id, student_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS exam_invigilators (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        exam_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        role TEXT NOT NULL DEFAULT 'Assistant Invigilator',
        assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (exam_id) REFERENCES exams(id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users(id),
        UNIQUE(exam_id, user_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        exam_id INTEGER,                 -- NULL => general attendance
        rfid_uid TEXT NOT NULL,
        entry_timestamp TEXT,            -- ISO-8601 with offset
        entry_time TEXT,                 -- HH:MM:SS
        exit_timestamp TEXT,
        exit_time TEXT,
        date TEXT NOT NULL,              -- YYYY-MM-DD (civil day)
        day_of_week TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'present'
            CHECK (status IN ('present', 'late', 'absent', 'excused')),
        entry_type TEXT CHECK (entry_type IN ('entry', 'exit')),
        seat_number TEXT,
        exam_code TEXT,
        exam_name TEXT,
        exam_subject TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (student_id) REFERENCES students(id),
        FOREIGN KEY (exam_id) REFERENCES exams(id)
    )
    """)

    # One ledger row per (student, day, exam-or-null).
    cursor.execute("""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_attendance_student_day_exam
    ON attendance (student_id, date, IFNULL(exam_id, 0))
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_attendance_date ON attendance (date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_attendance_exam ON attendance (exam_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_exams_date ON exams (exam_date)")

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def create_user(username: str, password: str, *, full_name: str, role: str = "invigilator") -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (username, password_hash, full_name, role)
            VALUES (?, ?, ?, ?)
            """,
            (clean_username, _hash_password(clean_password), full_name.strip(), role),
        )
        user_id = int(cur.lastrowid)
        conn.commit()
        return user_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def verify_user_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash, full_name, role, is_active
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row or not row["is_active"]:
        return None
    if not _verify_password(clean_password, row["password_hash"]):
        return None

    return {
        "id": row["id"],
        "username": row["username"],
        "full_name": row["full_name"],
        "role": row["role"],
    }


def get_user_by_id(user_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, full_name, role, is_active, created_at
        FROM users
        WHERE id = ?
        """,
        (user_id,),
    )
    row = _row_dict(cur.fetchone())
    conn.close()
    if row:
        row["is_active"] = bool(row["is_active"])
    return row


def list_users(role: str | None = None) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    if role:
        cur.execute(
            """
            SELECT id, username, full_name, role, is_active, created_at
            FROM users
            WHERE role = ?
            ORDER BY username
            """,
            (role,),
        )
    else:
        cur.execute("""
            SELECT id, username, full_name, role, is_active, created_at
            FROM users
            ORDER BY username
        """)
    rows = [_row_dict(r) for r in cur.fetchall()]
    conn.close()
    for row in rows:
        row["is_active"] = bool(row["is_active"])
    return rows


def set_user_active(user_id: int, active: bool) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("UPDATE users SET is_active = ? WHERE id = ?", (1 if active else 0, user_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Students
# -----------------------------
_STUDENT_COLUMNS = "id, name, reg_no, course, rfid_uid, is_active, enrolled_at, updated_at"
STUDENT_UPDATABLE_FIELDS = {"name", "reg_no", "course", "rfid_uid", "is_active"}


def _student_out(row: sqlite3.Row | None) -> dict | None:
    student = _row_dict(row)
    if student:
        student["is_active"] = bool(student["is_active"])
    return student


def list_students(
    *,
    search: str | None = None,
    course: str | None = None,
    include_inactive: bool = False,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[dict], int]:
    where = ["1=1"]
    params: list[Any] = []
    if not include_inactive:
        where.append("is_active = 1")
    if course:
        where.append("course LIKE ?")
        params.append(f"%{course}%")
    if search:
        where.append("(name LIKE ? OR reg_no LIKE ? OR rfid_uid LIKE ?)")
        params.extend([f"%{search}%"] * 3)
    where_sql = " AND ".join(where)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(1) FROM students WHERE {where_sql}", params)
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        f"""
        SELECT {_STUDENT_COLUMNS}
        FROM students
        WHERE {where_sql}
        ORDER BY enrolled_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        [*params, limit, offset],
    )
    rows = [_student_out(r) for r in cur.fetchall()]
    conn.close()
    return rows, total


def get_student_by_id(student_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_STUDENT_COLUMNS} FROM students WHERE id = ?", (student_id,))
    row = _student_out(cur.fetchone())
    conn.close()
    return row


def find_student_by_rfid(rfid_uid: str, *, conn: sqlite3.Connection | None = None) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(f"SELECT {_STUDENT_COLUMNS} FROM students WHERE rfid_uid = ?", (rfid_uid,))
        return _student_out(cur.fetchone())
    finally:
        if owns_conn:
            active_conn.close()


def find_student_conflict(reg_no: str | None, rfid_uid: str | None, *, exclude_id: int | None = None) -> str | None:
    """Return which identity key ("reg_no" or "rfid_uid") is already taken, if any."""
    conn = connect_db()
    cur = conn.cursor()
    try:
        for column, value in (("reg_no", reg_no), ("rfid_uid", rfid_uid)):
            if not value:
                continue
            cur.execute(
                f"SELECT id FROM students WHERE {column} = ? AND id <> ?",
                (value, exclude_id if exclude_id is not None else -1),
            )
            if cur.fetchone():
                return column
        return None
    finally:
        conn.close()


def add_student(name: str, reg_no: str, course: str, rfid_uid: str) -> dict:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO students (name, reg_no, course, rfid_uid)
            VALUES (?, ?, ?, ?)
            """,
            (name, reg_no, course, rfid_uid),
        )
        student_id = int(cur.lastrowid)
        conn.commit()
        cur.execute(f"SELECT {_STUDENT_COLUMNS} FROM students WHERE id = ?", (student_id,))
        return _student_out(cur.fetchone())
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def update_student(student_id: int, fields: dict[str, Any]) -> dict | None:
    updates = {k: v for k, v in fields.items() if k in STUDENT_UPDATABLE_FIELDS}
    conn = connect_db()
    cur = conn.cursor()
    try:
        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            cur.execute(
                f"""
                UPDATE students
                SET {assignments},
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                [*updates.values(), student_id],
            )
            conn.commit()
        cur.execute(f"SELECT {_STUDENT_COLUMNS} FROM students WHERE id = ?", (student_id,))
        return _student_out(cur.fetchone())
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def deactivate_student(student_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE students
        SET is_active = 0,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND is_active = 1
        """,
        (student_id,),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def get_student_stats() -> dict:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT
            COUNT(1) AS total,
            SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END) AS active
        FROM students
    """)
    row = cur.fetchone()
    cur.execute("""
        SELECT course, COUNT(1) AS count
        FROM students
        WHERE is_active = 1
        GROUP BY course
        ORDER BY count DESC, course ASC
    """)
    course_stats = [{"course": r["course"], "count": int(r["count"])} for r in cur.fetchall()]
    conn.close()
    return {
        "total_students": int(row["total"] or 0),
        "active_students": int(row["active"] or 0),
        "course_stats": course_stats,
    }


# -----------------------------
# Exams
# -----------------------------
_EXAM_COLUMNS = """
    id, exam_code, exam_name, subject, course, academic_year, semester, exam_type,
    exam_date, start_time, end_time, duration_minutes, venue_room, venue_building,
    instructions, status, allow_late_entry, late_entry_grace_minutes, require_exit_scan,
    auto_mark_absent, absent_marking_minutes, is_active, created_by, last_modified_by,
    created_at, updated_at
"""
_EXAM_BOOL_COLUMNS = ("allow_late_entry", "require_exit_scan", "auto_mark_absent", "is_active")
EXAM_WRITABLE_FIELDS = {
    "exam_code",
    "exam_name",
    "subject",
    "course",
    "academic_year",
    "semester",
    "exam_type",
    "exam_date",
    "start_time",
    "end_time",
    "duration_minutes",
    "venue_room",
    "venue_building",
    "instructions",
    "allow_late_entry",
    "late_entry_grace_minutes",
    "require_exit_scan",
    "auto_mark_absent",
    "absent_marking_minutes",
}


def _exam_out(row: sqlite3.Row | None) -> dict | None:
    exam = _row_dict(row)
    if exam:
        for column in _EXAM_BOOL_COLUMNS:
            exam[column] = bool(exam[column])
    return exam


def _fetch_enrollments(cur: sqlite3.Cursor, exam_id: int) -> list[dict]:
    cur.execute(
        """
        SELECT
            ee.student_id,
            ee.seat_number,
            ee.enrolled_at,
            s.name,
            s.reg_no,
            s.course,
            s.rfid_uid
        FROM exam_enrollments ee
        JOIN students s ON s.id = ee.student_id
        WHERE ee.exam_id = ?
        ORDER BY ee.id ASC
        """,
        (exam_id,),
    )
    return [_row_dict(r) for r in cur.fetchall()]


def _fetch_invigilators(cur: sqlite3.Cursor, exam_id: int) -> list[dict]:
    cur.execute(
        """
        SELECT ei.user_id, ei.role, ei.assigned_at, u.username, u.full_name
        FROM exam_invigilators ei
        JOIN users u ON u.id = ei.user_id
        WHERE ei.exam_id = ?
        ORDER BY ei.id ASC
        """,
        (exam_id,),
    )
    return [_row_dict(r) for r in cur.fetchall()]


def get_exam_by_code(
    exam_code: str,
    *,
    include_inactive: bool = False,
    with_members: bool = True,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        query = f"SELECT {_EXAM_COLUMNS} FROM exams WHERE exam_code = ?"
        if not include_inactive:
            query += " AND is_active = 1"
        cur.execute(query, (exam_code,))
        exam = _exam_out(cur.fetchone())
        if exam and with_members:
            exam["enrolled_students"] = _fetch_enrollments(cur, exam["id"])
            exam["invigilators"] = _fetch_invigilators(cur, exam["id"])
        return exam
    finally:
        if owns_conn:
            active_conn.close()


def find_active_exam_by_code(exam_code: str, *, conn: sqlite3.Connection | None = None) -> dict | None:
    """Exam eligible as a scan target: active and Scheduled or In Progress."""
    exam = get_exam_by_code(exam_code, conn=conn)
    if not exam or not is_scannable(exam["status"]):
        return None
    return exam


def list_exams(
    *,
    status: str | None = None,
    course: str | None = None,
    search: str | None = None,
    invigilator_id: int | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[dict], int]:
    where = ["e.is_active = 1"]
    params: list[Any] = []
    if status:
        where.append("e.status = ?")
        params.append(status)
    if course:
        where.append("e.course LIKE ?")
        params.append(f"%{course}%")
    if search:
        where.append("(e.exam_name LIKE ? OR e.subject LIKE ? OR e.exam_code LIKE ?)")
        params.extend([f"%{search}%"] * 3)
    if invigilator_id is not None:
        where.append("EXISTS (SELECT 1 FROM exam_invigilators ei WHERE ei.exam_id = e.id AND ei.user_id = ?)")
        params.append(invigilator_id)
    if start_date:
        where.append("e.exam_date >= ?")
        params.append(start_date)
    if end_date:
        where.append("e.exam_date <= ?")
        params.append(end_date)
    where_sql = " AND ".join(where)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(1) FROM exams e WHERE {where_sql}", params)
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        f"""
        SELECT
            {_EXAM_COLUMNS},
            (SELECT COUNT(1) FROM exam_enrollments ee WHERE ee.exam_id = e.id) AS total_enrolled,
            (SELECT COUNT(1) FROM exam_invigilators ei WHERE ei.exam_id = e.id) AS total_invigilators
        FROM exams e
        WHERE {where_sql}
        ORDER BY e.exam_date DESC, e.start_time DESC
        LIMIT ? OFFSET ?
        """,
        [*params, limit, offset],
    )
    rows = [_exam_out(r) for r in cur.fetchall()]
    conn.close()
    return rows, total


def list_upcoming_exams(today: str, *, limit: int = 5, invigilator_id: int | None = None) -> list[dict]:
    rows, _ = list_exams(
        invigilator_id=invigilator_id,
        start_date=today,
        limit=500,
    )
    upcoming = [r for r in rows if is_scannable(r["status"])]
    upcoming.sort(key=lambda r: (r["exam_date"], r["start_time"]))
    return upcoming[:limit]


def create_exam(fields: dict[str, Any], *, created_by: int | None) -> dict:
    values = {k: v for k, v in fields.items() if k in EXAM_WRITABLE_FIELDS}
    values["created_by"] = created_by
    values["last_modified_by"] = created_by
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"INSERT INTO exams ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )
        conn.commit()
        return get_exam_by_code(values["exam_code"], conn=conn)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def update_exam(exam_id: int, fields: dict[str, Any], *, modified_by: int | None) -> None:
    updates = {k: v for k, v in fields.items() if k in EXAM_WRITABLE_FIELDS}
    if not updates:
        return
    assignments = ", ".join(f"{column} = ?" for column in updates)
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"""
            UPDATE exams
            SET {assignments},
                last_modified_by = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            [*updates.values(), modified_by, exam_id],
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def set_exam_status(exam_id: int, status: str, *, modified_by: int | None) -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE exams
        SET status = ?,
            last_modified_by = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (status, modified_by, exam_id),
    )
    conn.commit()
    conn.close()


def deactivate_exam(exam_id: int, *, modified_by: int | None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE exams
        SET is_active = 0,
            last_modified_by = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND is_active = 1
        """,
        (modified_by, exam_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def enroll_student(exam_id: int, student_id: int, seat_number: str | None = None) -> None:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO exam_enrollments (exam_id, student_id, seat_number)
            VALUES (?, ?, ?)
            """,
            (exam_id, student_id, seat_number),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def unenroll_student(exam_id: int, student_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        "DELETE FROM exam_enrollments WHERE exam_id = ? AND student_id = ?",
        (exam_id, student_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


def assign_invigilator(exam_id: int, user_id: int, role: str) -> None:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO exam_invigilators (exam_id, user_id, role)
            VALUES (?, ?, ?)
            """,
            (exam_id, user_id, role),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


def remove_invigilator(exam_id: int, user_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        "DELETE FROM exam_invigilators WHERE exam_id = ? AND user_id = ?",
        (exam_id, user_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Attendance ledger
# -----------------------------
ATTENDANCE_WRITABLE_FIELDS = {
    "student_id",
    "exam_id",
    "rfid_uid",
    "entry_timestamp",
    "entry_time",
    "exit_timestamp",
    "exit_time",
    "date",
    "day_of_week",
    "status",
    "entry_type",
    "seat_number",
    "exam_code",
    "exam_name",
    "exam_subject",
}

_ATTENDANCE_SELECT = """
    SELECT
        a.id,
        a.student_id,
        a.exam_id,
        a.rfid_uid,
        a.entry_timestamp,
        a.entry_time,
        a.exit_timestamp,
        a.exit_time,
        a.date,
        a.day_of_week,
        a.status,
        a.entry_type,
        a.seat_number,
        a.exam_code,
        a.exam_name,
        a.exam_subject,
        a.created_at,
        a.updated_at,
        s.name AS student_name,
        s.reg_no AS student_reg_no,
        s.course AS student_course
    FROM attendance a
    JOIN students s ON s.id = a.student_id
"""


def get_attendance_record(record_id: int, *, conn: sqlite3.Connection | None = None) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(f"{_ATTENDANCE_SELECT} WHERE a.id = ?", (record_id,))
        return _row_dict(cur.fetchone())
    finally:
        if owns_conn:
            active_conn.close()


def find_attendance_record(
    student_id: int,
    date: str,
    exam_id: int | None,
    *,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            {_ATTENDANCE_SELECT}
            WHERE a.student_id = ?
              AND a.date = ?
              AND IFNULL(a.exam_id, 0) = IFNULL(?, 0)
            """,
            (student_id, date, exam_id),
        )
        return _row_dict(cur.fetchone())
    finally:
        if owns_conn:
            active_conn.close()


def insert_attendance_record(record: dict[str, Any], *, conn: sqlite3.Connection | None = None) -> dict:
    """
    Insert a ledger row and return it joined with student display fields.

    Raises sqlite3.IntegrityError when the (student, day, exam) tuple exists.
    """
    values = {k: v for k, v in record.items() if k in ATTENDANCE_WRITABLE_FIELDS}
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            f"INSERT INTO attendance ({columns}) VALUES ({placeholders})",
            list(values.values()),
        )
        record_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return get_attendance_record(record_id, conn=active_conn)
    except sqlite3.Error:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        cur.close()
        if owns_conn:
            active_conn.close()


def update_attendance_record(
    record_id: int,
    fields: dict[str, Any],
    *,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    updates = {k: v for k, v in fields.items() if k in ATTENDANCE_WRITABLE_FIELDS}
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            cur.execute(
                f"""
                UPDATE attendance
                SET {assignments},
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                [*updates.values(), record_id],
            )
            if owns_conn:
                active_conn.commit()
        return get_attendance_record(record_id, conn=active_conn)
    except sqlite3.Error:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        cur.close()
        if owns_conn:
            active_conn.close()


def list_attendance(
    *,
    start_date: str | None = None,
    end_date: str | None = None,
    student_id: int | None = None,
    exam_code: str | None = None,
    exam_id: int | None = None,
    course: str | None = None,
    status: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[dict], int]:
    where = ["1=1"]
    params: list[Any] = []
    if start_date:
        where.append("a.date >= ?")
        params.append(start_date)
    if end_date:
        where.append("a.date <= ?")
        params.append(end_date)
    if student_id is not None:
        where.append("a.student_id = ?")
        params.append(student_id)
    if exam_code:
        where.append("a.exam_code = ?")
        params.append(exam_code)
    if exam_id is not None:
        where.append("a.exam_id = ?")
        params.append(exam_id)
    if course:
        where.append("s.course LIKE ?")
        params.append(f"%{course}%")
    if status:
        where.append("a.status = ?")
        params.append(status)
    where_sql = " AND ".join(where)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT COUNT(1)
        FROM attendance a
        JOIN students s ON s.id = a.student_id
        WHERE {where_sql}
        """,
        params,
    )
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        f"""
        {_ATTENDANCE_SELECT}
        WHERE {where_sql}
        ORDER BY a.date DESC, COALESCE(a.entry_time, a.exit_time, '00:00:00') DESC, a.id DESC
        LIMIT ? OFFSET ?
        """,
        [*params, limit, offset],
    )
    rows = [_row_dict(r) for r in cur.fetchall()]
    conn.close()
    return rows, total


def get_attendance_stats(*, today: str, week_start: str, week_end: str, trend_start: str) -> dict:
    conn = connect_db()
    cur = conn.cursor()

    cur.execute(
        """
        SELECT
            SUM(CASE WHEN date = ? THEN 1 ELSE 0 END) AS today_count,
            SUM(CASE WHEN date BETWEEN ? AND ? THEN 1 ELSE 0 END) AS week_count,
            COUNT(1) AS total_count
        FROM attendance
        WHERE status <> 'absent'
        """,
        (today, week_start, week_end),
    )
    row = cur.fetchone()

    cur.execute("""
        SELECT s.course, COUNT(1) AS count, COUNT(DISTINCT a.student_id) AS unique_students
        FROM attendance a
        JOIN students s ON s.id = a.student_id
        WHERE a.status <> 'absent'
        GROUP BY s.course
        ORDER BY count DESC, s.course ASC
    """)
    course_stats = [
        {
            "course": r["course"],
            "count": int(r["count"]),
            "unique_students": int(r["unique_students"]),
        }
        for r in cur.fetchall()
    ]

    cur.execute(
        """
        SELECT date, COUNT(1) AS count
        FROM attendance
        WHERE date BETWEEN ? AND ?
          AND status <> 'absent'
        GROUP BY date
        """,
        (trend_start, today),
    )
    daily_counts = {str(r["date"]): int(r["count"]) for r in cur.fetchall()}

    cur.execute("""
        SELECT
            s.id AS student_id,
            s.name,
            s.reg_no,
            s.course,
            COUNT(1) AS attendance_count,
            MAX(COALESCE(a.exit_timestamp, a.entry_timestamp)) AS last_scan
        FROM attendance a
        JOIN students s ON s.id = a.student_id
        WHERE a.status <> 'absent'
        GROUP BY s.id
        ORDER BY attendance_count DESC, last_scan DESC
        LIMIT 10
    """)
    top_students = [_row_dict(r) for r in cur.fetchall()]
    conn.close()

    return {
        "summary": {
            "today_attendance": int(row["today_count"] or 0),
            "week_attendance": int(row["week_count"] or 0),
            "total_attendance": int(row["total_count"] or 0),
        },
        "course_stats": course_stats,
        "daily_counts": daily_counts,
        "top_students": top_students,
    }


def get_exam_attendance_summary(exam: dict) -> dict:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            COUNT(1) AS recorded,
            SUM(CASE WHEN status = 'present' THEN 1 ELSE 0 END) AS present,
            SUM(CASE WHEN status = 'late' THEN 1 ELSE 0 END) AS late,
            SUM(CASE WHEN status = 'absent' THEN 1 ELSE 0 END) AS absent,
            SUM(CASE WHEN status = 'excused' THEN 1 ELSE 0 END) AS excused,
            SUM(CASE WHEN status IN ('present', 'late') AND exit_timestamp IS NULL THEN 1 ELSE 0 END) AS missing_exit
        FROM attendance
        WHERE exam_id = ?
        """,
        (exam["id"],),
    )
    row = cur.fetchone()
    conn.close()

    enrolled = len(exam.get("enrolled_students") or [])
    recorded = int(row["recorded"] or 0)
    return {
        "exam_code": exam["exam_code"],
        "enrolled": enrolled,
        "recorded": recorded,
        "present": int(row["present"] or 0),
        "late": int(row["late"] or 0),
        "absent": int(row["absent"] or 0),
        "excused": int(row["excused"] or 0),
        "not_scanned": max(0, enrolled - recorded),
        "missing_exit": int(row["missing_exit"] or 0) if exam.get("require_exit_scan") else None,
    }


# -----------------------------
# Resets
# -----------------------------
def clear_attendance() -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance;")
    removed = cur.rowcount
    cur.execute("DELETE FROM sqlite_sequence WHERE name='attendance';")
    conn.commit()
    conn.close()
    return removed
