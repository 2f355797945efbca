import logging
import sqlite3
from datetime import datetime
from typing import Literal, TypedDict

from backend.errors import TransientIOError, ValidationError
from backend.services.notifications import NotificationAttempt, NotificationDispatcher
from database.db import (
    DecisionCode,
    StudentIdentity,
    TransitionResult,
    get_student_by_rfid,
    record_time_in,
    record_time_out,
)

logger = logging.getLogger(__name__)

ScanMode = Literal["time_in", "time_out"]
ScanOutcome = Literal["Success", "Duplicate", "NotFound", "Error"]
BannerLevel = Literal["success", "info", "error"]

SCAN_MODES: set[str] = {"time_in", "time_out"}
GENERIC_ERROR_MESSAGE = "Error processing scan. Please try again."


class ScanResult(TypedDict):
    outcome: ScanOutcome
    level: BannerLevel
    display_message: str
    mode: ScanMode
    student: StudentIdentity | None
    session_number: int | None
    duration_hours: float | None
    time_in: str | None
    time_out: str | None
    notifications: list[NotificationAttempt]
    notification_success: bool | None


# -----------------------------
# Identity resolution
# -----------------------------
def clean_rfid_tag(rfid_tag: str | None) -> str:
    tag = (rfid_tag or "").strip()
    if not tag:
        raise ValidationError("RF ID is required.")
    return tag


def resolve_identity(rfid_tag: str) -> StudentIdentity | None:
    """Current holder of the tag, or None if nobody holds it."""
    return get_student_by_rfid(clean_rfid_tag(rfid_tag))


# -----------------------------
# Conflict classification
# -----------------------------
_OUTCOMES: dict[str, tuple[ScanOutcome, BannerLevel]] = {
    "TIME_IN_SET": ("Success", "success"),
    "TIME_OUT_SET": ("Success", "success"),
    "DUPLICATE_TIME_IN": ("Duplicate", "info"),
    "NO_ACTIVE_SESSION": ("Error", "error"),
    "STUDENT_NOT_FOUND": ("NotFound", "error"),
    "ERROR": ("Error", "error"),
}


def classify(decision_code: DecisionCode | str) -> tuple[ScanOutcome, BannerLevel]:
    return _OUTCOMES.get(decision_code, ("Error", "error"))


def _build_scan_result(
    *,
    decision_code: str,
    display_message: str,
    mode: ScanMode,
    student: StudentIdentity | None = None,
    transition: TransitionResult | None = None,
    notifications: list[NotificationAttempt] | None = None,
    notification_success: bool | None = None,
) -> ScanResult:
    outcome, level = classify(decision_code)
    return {
        "outcome": outcome,
        "level": level,
        "display_message": display_message,
        "mode": mode,
        "student": student,
        "session_number": transition["session_number"] if transition else None,
        "duration_hours": transition["duration_hours"] if transition else None,
        "time_in": transition["time_in"] if transition else None,
        "time_out": transition["time_out"] if transition else None,
        "notifications": notifications or [],
        "notification_success": notification_success,
    }


def _success_message(student: StudentIdentity, transition: TransitionResult) -> str:
    name = f"{student['first_name']} {student['last_name']}"
    if transition["decision_code"] == "TIME_IN_SET":
        return f"{name} timed in (session {transition['session_number']})."
    return (
        f"{name} timed out (session {transition['session_number']}, "
        f"{transition['duration_hours']:.2f} hours)."
    )


def _conflict_message(student: StudentIdentity, transition: TransitionResult) -> str:
    name = f"{student['first_name']} {student['last_name']}"
    if transition["decision_code"] == "DUPLICATE_TIME_IN":
        return (
            f"{name} already has an active time-in today "
            f"(session {transition['session_number']}). Switch to Time Out to close it."
        )
    return f"{name}: {transition['message']}"


# -----------------------------
# Scan handling
# -----------------------------
def process_scan(
    rfid_tag: str,
    mode: str,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> ScanResult:
    """
    Handle one RFID scan end to end.

    Resolving -> Transitioning -> (on Success) Notifying. The attendance
    transaction has committed before any notification is attempted, so the
    notification outcome only ever annotates a Success result.
    """
    tag = clean_rfid_tag(rfid_tag)
    if mode not in SCAN_MODES:
        raise ValidationError(f"Unsupported scan mode: {mode}")
    scan_mode: ScanMode = "time_in" if mode == "time_in" else "time_out"
    stamp = now or datetime.now()

    try:
        student = resolve_identity(tag)
    except (sqlite3.Error, TransientIOError):
        logger.exception("identity lookup failed for tag %s", tag)
        return _build_scan_result(decision_code="ERROR", display_message=GENERIC_ERROR_MESSAGE, mode=scan_mode)

    if student is None:
        logger.info("scan for unknown tag %s", tag)
        return _build_scan_result(
            decision_code="STUDENT_NOT_FOUND",
            display_message=f"No student found with RF ID: {tag}",
            mode=scan_mode,
        )

    try:
        if scan_mode == "time_in":
            transition = record_time_in(student, now=stamp)
        else:
            transition = record_time_out(student["learner_reference_number"], now=stamp)
    except (sqlite3.Error, TransientIOError):
        logger.exception("%s failed for %s", scan_mode, student["learner_reference_number"])
        return _build_scan_result(
            decision_code="ERROR",
            display_message=GENERIC_ERROR_MESSAGE,
            mode=scan_mode,
            student=student,
        )

    decision = transition["decision_code"]
    if decision not in {"TIME_IN_SET", "TIME_OUT_SET"}:
        logger.info("%s conflict for %s: %s", scan_mode, student["learner_reference_number"], decision)
        return _build_scan_result(
            decision_code=decision,
            display_message=_conflict_message(student, transition),
            mode=scan_mode,
            student=student,
            transition=transition,
        )

    message = _success_message(student, transition)
    notifications: list[NotificationAttempt] = []
    notification_success: bool | None = None
    if dispatcher is not None:
        try:
            dispatched = dispatcher.dispatch(student, scan_mode, stamp)
        except Exception:
            logger.exception("notification dispatch crashed for %s", student["learner_reference_number"])
        else:
            notifications = dispatched["attempts"]
            notification_success = dispatched["success"]

    delivered = [a["channel"] for a in notifications if a["success"]]
    if delivered:
        message = f"{message} Parent notified via {' and '.join(delivered)}."

    return _build_scan_result(
        decision_code=decision,
        display_message=message,
        mode=scan_mode,
        student=student,
        transition=transition,
        notifications=notifications,
        notification_success=notification_success,
    )
