from datetime import datetime

import pytest

import database.db as db
from backend.errors import ValidationError
from backend.services.scanner import GENERIC_ERROR_MESSAGE, classify, process_scan, resolve_identity

MORNING = datetime(2026, 3, 2, 7, 0, 0)
NOON = datetime(2026, 3, 2, 11, 30, 0)


def test_unknown_tag_is_not_found(temp_db, dispatcher, fake_email):
    result = process_scan("1234567890", "time_in", dispatcher=dispatcher, now=MORNING)

    assert result["outcome"] == "NotFound"
    assert result["display_message"] == "No student found with RF ID: 1234567890"
    assert result["student"] is None
    assert result["notifications"] == []
    assert fake_email.calls == []


def test_tag_is_trimmed_before_lookup(student):
    assert resolve_identity("  0004527781 \n")["learner_reference_number"] == student["learner_reference_number"]


@pytest.mark.parametrize("tag", ["", "   ", None])
def test_blank_tag_is_rejected_before_lookup(temp_db, tag):
    with pytest.raises(ValidationError):
        process_scan(tag, "time_in", now=MORNING)


def test_unknown_mode_is_rejected(student):
    with pytest.raises(ValidationError):
        process_scan("0004527781", "lunch", now=MORNING)


def test_double_time_in_is_success_then_duplicate(student, dispatcher, fake_email, fake_sms):
    first = process_scan("0004527781", "time_in", dispatcher=dispatcher, now=MORNING)
    second = process_scan("0004527781", "time_in", dispatcher=dispatcher, now=MORNING.replace(second=1))

    assert first["outcome"] == "Success"
    assert first["level"] == "success"
    assert first["session_number"] == 1
    assert first["display_message"] == "Juan Dela Cruz timed in (session 1). Parent notified via email and sms."
    assert first["notification_success"] is True

    assert second["outcome"] == "Duplicate"
    assert second["level"] == "info"
    assert second["session_number"] == 1
    assert "already has an active time-in" in second["display_message"]
    assert second["notifications"] == []

    # notified once, for the successful scan only
    assert len(fake_email.calls) == 1
    assert len(fake_sms.calls) == 1


def test_time_out_reports_duration(student, dispatcher, fake_sms):
    process_scan("0004527781", "time_in", dispatcher=dispatcher, now=MORNING)

    result = process_scan("0004527781", "time_out", dispatcher=dispatcher, now=NOON)

    assert result["outcome"] == "Success"
    assert result["duration_hours"] == 4.5
    assert result["time_out"] == "2026-03-02 11:30:00"
    assert "4.50 hours" in result["display_message"]
    assert "has left school" in fake_sms.calls[-1][1]

    sessions = db.get_sessions_for_day(student["learner_reference_number"], "2026-03-02")
    assert sessions[0]["time_out"] == "2026-03-02 11:30:00"


def test_time_out_without_time_in_is_error(student, dispatcher, fake_sms):
    result = process_scan("0004527781", "time_out", dispatcher=dispatcher, now=NOON)

    assert result["outcome"] == "Error"
    assert "No active time-in" in result["display_message"]
    assert result["notifications"] == []
    assert fake_sms.calls == []


def test_notification_failure_keeps_attendance(student, dispatcher, fake_email, fake_sms):
    fake_email.exc = RuntimeError("provider down")
    fake_sms.result = {"success": False, "error": "no credits"}

    result = process_scan("0004527781", "time_in", dispatcher=dispatcher, now=MORNING)

    assert result["outcome"] == "Success"
    assert result["notification_success"] is False
    assert result["display_message"] == "Juan Dela Cruz timed in (session 1)."
    assert [a["success"] for a in result["notifications"]] == [False, False]
    assert db.has_attendance_today(student["learner_reference_number"], now=MORNING)


def test_dispatcher_crash_keeps_attendance(student):
    class Exploding:
        def dispatch(self, *args):
            raise RuntimeError("boom")

    result = process_scan("0004527781", "time_in", dispatcher=Exploding(), now=MORNING)

    assert result["outcome"] == "Success"
    assert result["notifications"] == []
    assert result["notification_success"] is None


def test_only_successful_channels_are_listed(student, dispatcher, fake_email):
    fake_email.result = {"success": False, "error": "bounced"}

    result = process_scan("0004527781", "time_in", dispatcher=dispatcher, now=MORNING)

    assert result["display_message"].endswith("Parent notified via sms.")
    assert result["notification_success"] is True


def test_storage_failure_leaves_no_partial_session(student, dispatcher, fake_email):
    conn = db.connect_db()
    conn.execute(
        """
        CREATE TRIGGER fail_session_insert
        BEFORE INSERT ON attendance_sessions
        BEGIN
            SELECT RAISE(ABORT, 'storage unavailable');
        END
        """
    )
    conn.commit()
    conn.close()

    result = process_scan("0004527781", "time_in", dispatcher=dispatcher, now=MORNING)

    assert result["outcome"] == "Error"
    assert result["display_message"] == GENERIC_ERROR_MESSAGE
    assert fake_email.calls == []
    assert db.get_sessions_for_day(student["learner_reference_number"], "2026-03-02") == []


def test_tag_reassignment_is_resolved_to_current_holder(student):
    conn = db.connect_db()
    conn.execute("UPDATE students SET rfid_tag = NULL WHERE learner_reference_number = ?", (student["learner_reference_number"],))
    conn.commit()
    conn.close()
    db.add_student(
        learner_reference_number="136512090002",
        rfid_tag="0004527781",
        first_name="Maria",
        last_name="Santos",
    )

    result = process_scan("0004527781", "time_in", now=MORNING)

    assert result["student"]["learner_reference_number"] == "136512090002"
    assert result["notification_success"] is None


@pytest.mark.parametrize(
    "code, expected",
    [
        ("TIME_IN_SET", ("Success", "success")),
        ("TIME_OUT_SET", ("Success", "success")),
        ("DUPLICATE_TIME_IN", ("Duplicate", "info")),
        ("NO_ACTIVE_SESSION", ("Error", "error")),
        ("STUDENT_NOT_FOUND", ("NotFound", "error")),
        ("SOMETHING_ELSE", ("Error", "error")),
    ],
)
def test_classify(code, expected):
    assert classify(code) == expected
