import gc
from datetime import date, datetime, time

import backend.config as config
import backend.routers.core as core
import database.db as db
from backend.tests.helpers import insert_exam, insert_student, today


def _scan(client, headers, *, at: str, entry_type: str = "entry", exam_code: str | None = "MATH101",
          rfid_uid: str = "abcd1234"):
    body = {"rfidUid": rfid_uid, "timestamp": f"{today()}T{at}", "entryType": entry_type}
    if exam_code:
        body["examId"] = exam_code
    return client.post("/attendance/scan", json=body, headers=headers)


def _enrolled_exam(**overrides) -> tuple[dict, dict]:
    student = insert_student()
    exam = insert_exam(**overrides)
    db.enroll_student(exam["id"], student["id"], "A12")
    return student, exam


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, auth_headers):
    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, auth_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_attendance_config_reports_timezone(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    payload = res.json()
    assert payload["timezone"] == config.TIMEZONE.key
    assert payload["default_late_entry_grace_minutes"] == 15
    assert payload["stats_cache_ttl_seconds"] == config.STATS_CACHE_TTL_SECONDS


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."


def test_auth_me_reports_role(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["role"] == "admin"
    assert res.json()["username"] == config.ADMIN_USERNAME


def test_read_endpoints_require_session(client, auth_headers):
    for path in ("/students", "/exams", "/attendance", "/attendance/stats", "/scanner/status"):
        res = client.get(path)
        assert res.status_code == 401
        assert res.json()["detail"] == "Missing bearer token."

        res = client.get(path, headers=auth_headers)
        assert res.status_code == 200


def test_admin_routes_reject_invigilators(client, invigilator):
    res = client.post(
        "/students",
        json={"name": "X", "regNo": "R1", "course": "C", "rfidUid": "U1"},
        headers=invigilator["headers"],
    )
    assert res.status_code == 403

    res = client.post("/admin/cache/clear", headers=invigilator["headers"])
    assert res.status_code == 403


# -----------------------------
# Students
# -----------------------------
def test_create_and_list_students(client, auth_headers):
    payload = {"name": "Tariro Moyo", "regNo": " r2026001 ", "course": "BSc Maths", "rfidUid": "ab:cd:12"}

    res = client.post("/students", json=payload, headers=auth_headers)
    assert res.status_code == 201
    student = res.json()
    assert student["reg_no"] == "R2026001"
    assert student["rfid_uid"] == "AB:CD:12"
    assert student["is_active"] is True

    res = client.get("/students", params={"search": "tariro"}, headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 1
    assert body["rows"][0]["id"] == student["id"]


def test_duplicate_student_keys_conflict(client, auth_headers):
    insert_student(reg_no="REG001", rfid_uid="ABCD1234")

    same_reg = {"name": "A", "reg_no": "reg001", "course": "C", "rfid_uid": "NEW1"}
    res = client.post("/students", json=same_reg, headers=auth_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Student with this registration number already exists."

    same_card = {"name": "B", "reg_no": "REG999", "course": "C", "rfid_uid": "abcd1234"}
    res = client.post("/students", json=same_card, headers=auth_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "RFID card is already assigned to another student."


def test_update_and_deactivate_student(client, auth_headers):
    student = insert_student()

    res = client.put(f"/students/{student['id']}", json={"course": "BSc Physics"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["course"] == "BSc Physics"

    res = client.delete(f"/students/{student['id']}", headers=auth_headers)
    assert res.status_code == 200
    res = client.get("/students", headers=auth_headers)
    assert res.json()["total"] == 0

    res = client.delete(f"/students/{student['id']}", headers=auth_headers)
    assert res.status_code == 404


def test_student_stats_are_cached_until_a_write(client, auth_headers):
    insert_student()
    first = client.get("/students/stats/summary", headers=auth_headers).json()
    assert first["total_students"] == 1

    insert_student(name="Direct Insert", reg_no="REG002", rfid_uid="BEEF0001")
    cached = client.get("/students/stats/summary", headers=auth_headers).json()
    assert cached["total_students"] == 1

    client.post("/admin/cache/clear", headers=auth_headers)
    fresh = client.get("/students/stats/summary", headers=auth_headers).json()
    assert fresh["total_students"] == 2


# -----------------------------
# Exams
# -----------------------------
def _exam_payload(**overrides) -> dict:
    payload = {
        "exam_code": "math101",
        "exam_name": "Calculus I",
        "subject": "Mathematics",
        "course": "BSc Maths",
        "exam_date": today(),
        "start_time": "9:00",
        "end_time": "11:00",
    }
    payload.update(overrides)
    return payload


def test_create_exam_normalizes_and_defaults(client, auth_headers):
    res = client.post("/exams", json=_exam_payload(), headers=auth_headers)
    assert res.status_code == 201
    exam = res.json()
    assert exam["exam_code"] == "MATH101"
    assert exam["start_time"] == "09:00"
    assert exam["status"] == "Scheduled"
    assert exam["late_entry_grace_minutes"] == 15
    assert exam["allow_late_entry"] is True
    assert exam["enrolled_students"] == []

    res = client.post("/exams", json=_exam_payload(), headers=auth_headers)
    assert res.status_code == 409


def test_create_exam_validation(client, auth_headers):
    res = client.post("/exams", json=_exam_payload(end_time="08:30"), headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "End time must be after start time."

    res = client.post("/exams", json=_exam_payload(exam_code="M-1"), headers=auth_headers)
    assert res.status_code == 400

    res = client.post("/exams", json=_exam_payload(late_entry_grace_minutes=90), headers=auth_headers)
    assert res.status_code == 422


def test_enrollment_and_duplicate_enrollment(client, auth_headers):
    student = insert_student()
    insert_exam()

    res = client.post(
        "/exams/MATH101/students",
        json={"student_id": student["id"], "seat_number": "A12"},
        headers=auth_headers,
    )
    assert res.status_code == 201
    assert res.json()[0]["seat_number"] == "A12"

    res = client.post("/exams/MATH101/students", json={"student_id": student["id"]}, headers=auth_headers)
    assert res.status_code == 409

    res = client.delete(f"/exams/MATH101/students/{student['id']}", headers=auth_headers)
    assert res.status_code == 200


def test_scan_succeeds_right_after_duplicate_enrollment(client, auth_headers, device_headers):
    student = insert_student()
    insert_exam()
    body = {"student_id": student["id"], "seat_number": "A12"}
    assert client.post("/exams/MATH101/students", json=body, headers=auth_headers).status_code == 201

    # a failed insert must release the write lock without help from the collector
    gc.disable()
    try:
        res = client.post("/exams/MATH101/students", json=body, headers=auth_headers)
        assert res.status_code == 409

        res = _scan(client, device_headers, at="09:05:00")
        assert res.status_code == 201
        assert res.json()["outcome"] == "CREATED"
    finally:
        gc.enable()


def test_exam_attendance_follows_renamed_exam(client, auth_headers, device_headers):
    student, _ = _enrolled_exam()
    assert _scan(client, device_headers, at="08:50:00").status_code == 201

    res = client.put("/exams/MATH101", json={"exam_code": "MATH102"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["exam_code"] == "MATH102"

    res = client.get("/exams/MATH102/attendance", headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["summary"]["present"] == 1
    assert [row["student_id"] for row in body["rows"]] == [student["id"]]


def test_invigilator_status_rules(client, auth_headers, invigilator):
    insert_exam()

    res = client.put("/exams/MATH101/status", json={"status": "In Progress"}, headers=invigilator["headers"])
    assert res.status_code == 403

    res = client.post(
        "/exams/MATH101/invigilators",
        json={"user_id": invigilator["id"], "role": "Chief Invigilator"},
        headers=auth_headers,
    )
    assert res.status_code == 201

    res = client.put("/exams/MATH101/status", json={"status": "Cancelled"}, headers=invigilator["headers"])
    assert res.status_code == 403
    assert res.json()["detail"] == "You can only start or complete exams."

    res = client.put("/exams/MATH101/status", json={"status": "In Progress"}, headers=invigilator["headers"])
    assert res.status_code == 200
    assert res.json()["status"] == "In Progress"

    res = client.get("/notifications/recent", params={"topic": "exam-status-changed"}, headers=auth_headers)
    assert res.json()[0]["payload"]["status"] == "In Progress"


def test_invigilator_sees_only_assigned_exams(client, auth_headers, invigilator):
    insert_exam()
    insert_exam(exam_code="PHYS201")
    db.assign_invigilator(db.get_exam_by_code("PHYS201")["id"], invigilator["id"], "Assistant Invigilator")

    res = client.get("/exams", headers=invigilator["headers"])
    assert [e["exam_code"] for e in res.json()["rows"]] == ["PHYS201"]

    res = client.get("/exams/MATH101", headers=invigilator["headers"])
    assert res.status_code == 403

    res = client.get("/exams", headers=auth_headers)
    assert res.json()["total"] == 2


def test_deleted_exam_is_hidden_and_not_scannable(client, auth_headers, device_headers):
    _enrolled_exam()

    res = client.delete("/exams/MATH101", headers=auth_headers)
    assert res.status_code == 200
    assert client.get("/exams/MATH101", headers=auth_headers).status_code == 404

    res = _scan(client, device_headers, at="08:50:00")
    assert res.status_code == 404
    assert res.json()["reason"] == "EXAM_NOT_FOUND"


# -----------------------------
# Scan ingestion
# -----------------------------
def test_scan_requires_device_secret_or_session(client, auth_headers):
    _enrolled_exam()

    res = _scan(client, {}, at="08:50:00")
    assert res.status_code == 401

    res = _scan(client, {"X-Device-Secret": "wrong"}, at="08:50:00")
    assert res.status_code == 401

    res = _scan(client, auth_headers, at="08:50:00")
    assert res.status_code == 201


def test_scan_exam_scenario(client, auth_headers, device_headers):
    _enrolled_exam()

    res = _scan(client, device_headers, at="08:44:00")
    assert res.status_code == 403
    assert res.json()["outcome"] == "REJECTED"
    assert res.json()["reason"] == "OUTSIDE_WINDOW"

    res = _scan(client, device_headers, at="08:45:00")
    assert res.status_code == 201
    created = res.json()
    assert created["outcome"] == "CREATED"
    assert created["data"]["entry_type"] == "entry"
    assert created["data"]["exit_timestamp"] is None
    assert created["data"]["seat_number"] == "A12"

    res = _scan(client, device_headers, at="11:30:00", entry_type="exit")
    assert res.status_code == 200
    updated = res.json()
    assert updated["outcome"] == "UPDATED"
    assert updated["data"]["id"] == created["data"]["id"]
    assert updated["data"]["entry_type"] == "exit"
    assert updated["data"]["exit_time"] == "11:30:00"

    res = client.get("/exams/MATH101/attendance", headers=auth_headers)
    assert res.status_code == 200
    summary = res.json()["summary"]
    assert summary["enrolled"] == 1
    assert summary["present"] == 1
    assert summary["not_scanned"] == 0


def test_scan_outcome_status_codes(client, device_headers):
    insert_student(name="Outsider", reg_no="REG777", rfid_uid="FFFF0000")
    _enrolled_exam()

    res = _scan(client, device_headers, at="08:50:00", rfid_uid="00000000")
    assert res.status_code == 404
    assert res.json()["outcome"] == "UNKNOWN_CARD"

    res = _scan(client, device_headers, at="08:50:00", rfid_uid="ffff0000")
    assert res.status_code == 403
    assert res.json()["reason"] == "NOT_ENROLLED"

    res = _scan(client, device_headers, at="08:50:00", exam_code="NOPE123")
    assert res.status_code == 404
    assert res.json()["reason"] == "EXAM_NOT_FOUND"

    res = client.post("/attendance/scan", json={"timestamp": "2026-03-10T08:00:00"}, headers=device_headers)
    assert res.status_code == 400
    assert res.json()["outcome"] == "INVALID"

    res = client.post(
        "/attendance/scan",
        json={"rfidUid": "ABCD1234", "timestamp": "not-a-time"},
        headers=device_headers,
    )
    assert res.status_code == 400


def test_scan_type_errors_use_invalid_body(client, auth_headers, device_headers):
    _enrolled_exam()

    res = client.post("/attendance/scan", json={"rfidUid": 12345}, headers=device_headers)
    assert res.status_code == 400
    assert res.json()["outcome"] == "INVALID"
    assert res.json()["message"].startswith("rfidUid")

    res = client.post("/attendance/scan", json={"rfidUid": "ABCD1234", "timestamp": ["08:50"]}, headers=device_headers)
    assert res.status_code == 400
    assert res.json()["outcome"] == "INVALID"

    # other routes keep the standard validation response
    res = client.post("/exams", json={"exam_code": 5}, headers=auth_headers)
    assert res.status_code == 422
    assert "detail" in res.json()


def test_scan_accepts_epoch_millisecond_timestamp(client, device_headers):
    _enrolled_exam()
    scan_day = date.fromisoformat(today())
    stamp = datetime.combine(scan_day, time(8, 50), tzinfo=config.TIMEZONE)

    res = client.post(
        "/attendance/scan",
        json={"rfidUid": "abcd1234", "timestamp": int(stamp.timestamp() * 1000), "examId": "MATH101"},
        headers=device_headers,
    )
    assert res.status_code == 201
    assert res.json()["data"]["entry_time"] == "08:50:00"
    assert res.json()["data"]["date"] == today()


def test_general_scan_and_listing(client, auth_headers, device_headers):
    insert_student()

    first = _scan(client, device_headers, at="07:30:00", exam_code=None)
    second = _scan(client, device_headers, at="16:00:00", exam_code=None, entry_type="exit")
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["message"] == "Test Student checked out"

    res = client.get("/attendance", params={"date": today()}, headers=auth_headers)
    body = res.json()
    assert body["total"] == 1
    assert body["rows"][0]["exam_id"] is None
    assert body["rows"][0]["student_name"] == "Test Student"


def test_scan_publishes_notifications(client, auth_headers, device_headers):
    insert_student()
    _scan(client, device_headers, at="08:00:00", exam_code=None, rfid_uid="99999999")
    _scan(client, device_headers, at="08:01:00", exam_code=None)

    res = client.get("/notifications/recent", headers=auth_headers)
    topics = [e["topic"] for e in res.json()]
    assert topics == ["new-attendance", "unknown-card-scan"]


def test_attendance_stats_refresh_after_scan(client, auth_headers, device_headers):
    insert_student()

    before = client.get("/attendance/stats", headers=auth_headers).json()
    assert before["summary"]["today_attendance"] == 0
    assert len(before["daily_trend"]) == 7
    assert client.get("/attendance/stats", headers=auth_headers).json()["cached"] is True

    _scan(client, device_headers, at="08:00:00", exam_code=None)

    after = client.get("/attendance/stats", headers=auth_headers).json()
    assert after["cached"] is False
    assert after["summary"]["today_attendance"] == 1
    assert after["daily_trend"][-1] == {
        "date": today(),
        "day": after["daily_trend"][-1]["day"],
        "count": 1,
    }


# -----------------------------
# Admin
# -----------------------------
def test_mark_absent_endpoint(client, auth_headers, device_headers):
    _enrolled_exam(exam_date="2020-01-06")
    late_student = insert_student(name="Second", reg_no="REG002", rfid_uid="BEEF0002")
    db.enroll_student(db.get_exam_by_code("MATH101")["id"], late_student["id"], "A13")

    res = client.post("/admin/exams/MATH101/mark-absent", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["marked"] == 2

    res = client.get("/attendance", params={"status": "absent"}, headers=auth_headers)
    assert res.json()["total"] == 2

    res = client.post("/admin/exams/NOPE123/mark-absent", headers=auth_headers)
    assert res.status_code == 404


def test_reset_attendance(client, auth_headers, device_headers):
    insert_student()
    _scan(client, device_headers, at="08:00:00", exam_code=None)

    res = client.post("/admin/reset/attendance", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["removed"] == 1
    assert client.get("/attendance", headers=auth_headers).json()["total"] == 0


# -----------------------------
# Scanner devices
# -----------------------------
def test_device_command_round_trip(client, auth_headers, device_headers):
    res = client.get("/scanner/commands", params={"deviceId": "gate-1"}, headers=device_headers)
    assert res.status_code == 204

    res = client.post(
        "/scanner/send-command",
        json={"deviceId": "gate-1", "command": "set-mode", "mode": "exit"},
        headers=auth_headers,
    )
    assert res.status_code == 200

    res = client.get("/scanner/commands", params={"deviceId": "gate-1"}, headers=device_headers)
    assert res.status_code == 200
    assert res.json()["command"] == "set-mode"
    assert res.json()["mode"] == "exit"

    res = client.get("/scanner/commands", params={"deviceId": "gate-1"})
    assert res.status_code == 401


def test_device_status_reports(client, auth_headers, device_headers):
    res = client.post(
        "/scanner/status",
        json={"deviceId": "gate-1", "connected": True, "firmware": "1.4"},
        headers=device_headers,
    )
    assert res.status_code == 200

    statuses = client.get("/scanner/status", headers=auth_headers).json()
    assert statuses[0]["device_id"] == "gate-1"
    assert statuses[0]["firmware"] == "1.4"
