from fastapi import APIRouter, Depends

from backend.config import DB_BUSY_TIMEOUT_SECONDS, RECENT_SCANS_LIMIT
from backend.dependencies import get_dispatcher
from backend.services.notifications import NotificationDispatcher

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/notifications")
def notification_config(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return dispatcher.describe()


@router.get("/config/attendance")
def attendance_config(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return {
        "db_busy_timeout_seconds": DB_BUSY_TIMEOUT_SECONDS,
        "notify_timeout_seconds": dispatcher.describe()["timeout_seconds"],
        "recent_scans_limit": RECENT_SCANS_LIMIT,
        "scan_modes": ["time_in", "time_out"],
    }
