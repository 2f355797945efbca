import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.config import NotificationSettings
from backend.dependencies import get_dispatcher
from backend.services.notifications import NotificationDispatcher


class RecordingSender:
    """Stands in for an email or SMS provider and remembers every call."""

    def __init__(self, name: str, result: dict | None = None, exc: Exception | None = None):
        self.name = name
        self.result = result if result is not None else {"success": True, "error": None}
        self.exc = exc
        self.calls: list[tuple] = []

    def send(self, *args):
        self.calls.append(args)
        if self.exc is not None:
            raise self.exc
        return self.result


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "scanroll_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def student(temp_db):
    db.add_student(
        learner_reference_number="136512090001",
        rfid_tag="0004527781",
        first_name="Juan",
        last_name="Dela Cruz",
        grade_level="Grade 7",
        school_year="2026-2027",
        guardian_contact_number="+63 917 123 4567",
        parent_email="parent@example.com",
    )
    return db.get_student("136512090001")


@pytest.fixture()
def fake_email():
    return RecordingSender("fake-email")


@pytest.fixture()
def fake_sms():
    return RecordingSender("fake-sms", result={"success": True, "error": None, "message_id": "1001"})


@pytest.fixture()
def dispatcher(fake_email, fake_sms):
    settings = NotificationSettings(email_api_key="email-key", sms_api_key="sms-key", sms_sender_name="SCHOOL")
    return NotificationDispatcher(settings, email_sender=fake_email, sms_sender=fake_sms)


@pytest.fixture()
def client(temp_db, dispatcher):
    main.app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.pop(get_dispatcher, None)


@pytest.fixture()
def broken_email():
    return RecordingSender("broken-email", exc=RuntimeError("smtp down"))
