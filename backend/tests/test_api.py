from datetime import datetime

import database.db as db


def _add_student(**overrides) -> str:
    values = {
        "learner_reference_number": "136512090010",
        "rfid_tag": "0009911223",
        "first_name": "Ana",
        "last_name": "Reyes",
        "grade_level": "Grade 8",
        "school_year": "2026-2027",
        "guardian_contact_number": "639171234567",
        "parent_email": None,
    }
    values.update(overrides)
    return db.add_student(**values)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_notification_config_reports_channels(client):
    res = client.get("/config/notifications")
    assert res.status_code == 200
    body = res.json()
    assert body["email"]["configured"] is True
    assert body["sms"]["configured"] is True
    assert body["sms"]["sender_name"] == "SCHOOL"


def test_attendance_config(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    assert res.json()["scan_modes"] == ["time_in", "time_out"]


def test_scan_unknown_tag(client):
    res = client.post("/attendance/scan", json={"rfid_tag": "1234567890", "mode": "time_in"})
    assert res.status_code == 200
    body = res.json()
    assert body["outcome"] == "NotFound"
    assert body["display_message"] == "No student found with RF ID: 1234567890"


def test_scan_blank_tag_is_rejected(client):
    res = client.post("/attendance/scan", json={"rfid_tag": "   ", "mode": "time_in"})
    assert res.status_code == 400
    assert res.json()["detail"] == "RF ID is required."


def test_scan_unknown_mode_is_rejected(client):
    res = client.post("/attendance/scan", json={"rfid_tag": "0009911223", "mode": "lunch"})
    assert res.status_code == 422


def test_scan_time_in_duplicate_then_time_out(client, fake_email, fake_sms):
    _add_student()

    first = client.post("/attendance/scan", json={"rfid_tag": "0009911223", "mode": "time_in"}).json()
    assert first["outcome"] == "Success"
    assert first["session_number"] == 1
    assert first["student"]["first_name"] == "Ana"
    # no parent email on file: SMS only
    assert [n["channel"] for n in first["notifications"]] == ["sms"]
    assert first["notifications"][0]["recipient"] == "09171234567"
    assert first["display_message"].endswith("Parent notified via sms.")
    assert fake_email.calls == []

    second = client.post("/attendance/scan", json={"rfid_tag": "0009911223", "mode": "time_in"}).json()
    assert second["outcome"] == "Duplicate"
    assert second["session_number"] == 1

    out = client.post("/attendance/scan", json={"rfid_tag": "0009911223", "mode": "time_out"}).json()
    assert out["outcome"] == "Success"
    assert out["session_number"] == 1
    assert out["duration_hours"] is not None

    again = client.post("/attendance/scan", json={"rfid_tag": "0009911223", "mode": "time_out"}).json()
    assert again["outcome"] == "Error"
    assert "No active time-in" in again["display_message"]

    assert len(fake_sms.calls) == 2


def test_todays_scans_lists_recent_sessions(client):
    _add_student()
    client.post("/attendance/scan", json={"rfid_tag": "0009911223", "mode": "time_in"})

    res = client.get("/attendance/today")
    assert res.status_code == 200
    rows = res.json()
    assert len(rows) == 1
    assert rows[0]["first_name"] == "Ana"
    assert rows[0]["session_number"] == 1
    assert rows[0]["time_out"] is None


def test_student_sessions_for_day(client):
    lrn = _add_student()
    db.record_time_in(db.get_student(lrn), now=datetime(2026, 3, 2, 7, 0, 0))
    db.record_time_out(lrn, now=datetime(2026, 3, 2, 11, 30, 0))

    res = client.get(f"/students/{lrn}/sessions", params={"date": "2026-03-02"})
    assert res.status_code == 200
    body = res.json()
    assert body["date"] == "2026-03-02"
    assert body["sessions"][0]["duration_hours"] == 4.5

    res = client.get(f"/students/{lrn}/sessions", params={"date": "03/02/2026"})
    assert res.status_code == 400


def test_student_sessions_unknown_student(client):
    res = client.get("/students/999/sessions")
    assert res.status_code == 404
    assert res.json()["detail"] == "Student not found."
