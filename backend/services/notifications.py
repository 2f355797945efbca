import html
import logging
import re
from datetime import datetime
from typing import Literal, TypedDict

from backend.config import NotificationSettings
from backend.services.providers import (
    EmailSender,
    HttpEmailSender,
    SemaphoreSmsSender,
    SmsSender,
)
from database.db import StudentIdentity

logger = logging.getLogger(__name__)

AttendanceEvent = Literal["time_in", "time_out"]
Channel = Literal["email", "sms"]


class NotificationAttempt(TypedDict):
    channel: Channel
    recipient: str
    success: bool
    error: str | None


class DispatchResult(TypedDict):
    # None when no channel was eligible for this student.
    success: bool | None
    attempts: list[NotificationAttempt]


def normalize_phone_number(phone_number: str) -> str:
    """
    Normalize a Philippine mobile number to the local 09XXXXXXXXX form.

    Returns an empty string when the input has no digits at all.
    """
    cleaned = re.sub(r"\D", "", phone_number or "")
    if not cleaned:
        return ""
    if cleaned.startswith("63"):
        cleaned = cleaned[2:]
        if not cleaned:
            return ""
    if cleaned.startswith("09"):
        return cleaned
    if cleaned.startswith("9") and len(cleaned) == 10:
        return f"0{cleaned}"
    if cleaned.startswith("0") and len(cleaned) == 11:
        return cleaned
    return f"0{cleaned}"


def _full_name(student: StudentIdentity) -> str:
    return f"{student['first_name']} {student['last_name']}".strip()


def _clock(timestamp: datetime) -> str:
    return timestamp.strftime("%I:%M %p")


def _calendar(timestamp: datetime) -> str:
    return f"{timestamp.month}/{timestamp.day}/{timestamp.year}"


def email_subject(student: StudentIdentity, event: AttendanceEvent) -> str:
    if event == "time_in":
        return f"{student['first_name']} Arrived at School"
    return f"{student['first_name']} Left School"


def email_body(student: StudentIdentity, event: AttendanceEvent, timestamp: datetime) -> str:
    headline = "has arrived at school" if event == "time_in" else "has left school"
    # Roster text is not ours; never let it into the markup raw.
    name = html.escape(_full_name(student))
    grade = html.escape(student.get("grade_level") or "-")
    return f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h2 style="color: #3b82f6;">School Attendance Notification</h2>
          <div style="background-color: #f0f9ff; padding: 20px; border-radius: 8px; margin: 20px 0;">
            <h3 style="margin: 0 0 10px 0;">{name} {headline}</h3>
            <p style="margin: 5px 0;"><strong>Time:</strong> {_clock(timestamp)}</p>
            <p style="margin: 5px 0;"><strong>Date:</strong> {_calendar(timestamp)}</p>
            <p style="margin: 5px 0;"><strong>Grade:</strong> {grade}</p>
          </div>
          <p style="color: #6b7280; font-size: 14px;">This is an automated message from the school attendance system.</p>
        </div>
    """


def sms_message(student: StudentIdentity, event: AttendanceEvent, timestamp: datetime) -> str:
    action = "arrived at" if event == "time_in" else "left"
    return (
        f"Hello! Your child {_full_name(student)} has {action} school "
        f"at {_clock(timestamp)} on {_calendar(timestamp)}."
    )


class NotificationDispatcher:
    """
    Fan a committed attendance event out to the guardian's channels.

    Each channel gets at most one attempt. A channel failure (including a
    provider timeout) is recorded in the result and never raised.
    """

    def __init__(
        self,
        settings: NotificationSettings,
        *,
        email_sender: EmailSender | None = None,
        sms_sender: SmsSender | None = None,
    ):
        self._settings = settings
        self._email = email_sender
        self._sms = sms_sender

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> "NotificationDispatcher":
        return cls(
            settings,
            email_sender=HttpEmailSender(settings) if settings.email_enabled else None,
            sms_sender=SemaphoreSmsSender(settings) if settings.sms_enabled else None,
        )

    def describe(self) -> dict:
        return {
            "email": {
                "configured": self._email is not None,
                "service": getattr(self._email, "name", None),
            },
            "sms": {
                "configured": self._sms is not None,
                "service": getattr(self._sms, "name", None),
                "sender_name": self._settings.sms_sender_name,
            },
            "timeout_seconds": self._settings.timeout_seconds,
        }

    def dispatch(
        self,
        student: StudentIdentity,
        event: AttendanceEvent,
        timestamp: datetime,
    ) -> DispatchResult:
        attempts: list[NotificationAttempt] = []

        parent_email = (student.get("parent_email") or "").strip()
        if parent_email and self._email is not None:
            attempts.append(self._send_email(student, parent_email, event, timestamp))

        guardian_number = (student.get("guardian_contact_number") or "").strip()
        if guardian_number and self._sms is not None:
            attempts.append(self._send_sms(student, guardian_number, event, timestamp))

        success: bool | None = None
        if attempts:
            success = any(a["success"] for a in attempts)

        logger.info(
            "notification dispatch for %s (%s): success=%s channels=%s",
            student["learner_reference_number"],
            event,
            success,
            [a["channel"] for a in attempts],
        )
        return {"success": success, "attempts": attempts}

    def _send_email(
        self,
        student: StudentIdentity,
        recipient: str,
        event: AttendanceEvent,
        timestamp: datetime,
    ) -> NotificationAttempt:
        try:
            result = self._email.send(
                recipient,
                email_subject(student, event),
                email_body(student, event, timestamp),
            )
            ok = bool(result.get("success"))
            error = None if ok else (result.get("error") or "Email delivery failed")
        except Exception as exc:
            ok, error = False, f"Email sending failed: {exc}"

        if not ok:
            logger.warning("email for %s failed: %s", student["learner_reference_number"], error)
        return {"channel": "email", "recipient": recipient, "success": ok, "error": error}

    def _send_sms(
        self,
        student: StudentIdentity,
        raw_number: str,
        event: AttendanceEvent,
        timestamp: datetime,
    ) -> NotificationAttempt:
        recipient = normalize_phone_number(raw_number)
        if not recipient:
            logger.warning("guardian contact for %s is not a usable number", student["learner_reference_number"])
            return {"channel": "sms", "recipient": raw_number, "success": False, "error": "Invalid guardian contact number"}

        try:
            result = self._sms.send(
                recipient,
                sms_message(student, event, timestamp),
                self._settings.sms_sender_name,
            )
            ok = bool(result.get("success"))
            error = None if ok else (result.get("error") or "SMS delivery failed")
        except Exception as exc:
            ok, error = False, f"SMS sending failed: {exc}"

        if not ok:
            logger.warning("sms for %s failed: %s", student["learner_reference_number"], error)
        return {"channel": "sms", "recipient": recipient, "success": ok, "error": error}

    def close(self) -> None:
        for sender in (self._email, self._sms):
            close = getattr(sender, "close", None)
            if close is not None:
                close()
