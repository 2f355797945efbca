from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from backend.config import RECENT_SCANS_LIMIT
from backend.dependencies import get_dispatcher
from backend.errors import ValidationError
from backend.services.notifications import NotificationDispatcher
from backend.services.scanner import process_scan
from database.db import get_recent_sessions, get_sessions_for_day, get_student

router = APIRouter()


class ScanRequest(BaseModel):
    rfid_tag: str
    mode: Literal["time_in", "time_out"]


def _parse_date(value: str | None) -> str:
    if not value:
        return datetime.now().strftime("%Y-%m-%d")
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").strftime("%Y-%m-%d")
    except ValueError:
        raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD.")


@router.post("/attendance/scan")
def scan(payload: ScanRequest, dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    try:
        return process_scan(payload.rfid_tag, payload.mode, dispatcher=dispatcher)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("/attendance/today")
def todays_scans(limit: int = Query(default=RECENT_SCANS_LIMIT, ge=1, le=100)):
    return get_recent_sessions(_parse_date(None), limit)


@router.get("/students/{learner_reference_number}/sessions")
def student_sessions(learner_reference_number: str, date: str | None = None):
    student = get_student(learner_reference_number)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")

    day = _parse_date(date)
    return {
        "student": student,
        "date": day,
        "sessions": get_sessions_for_day(learner_reference_number, day),
    }
