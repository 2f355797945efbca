import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SCANROLL_DB_PATH", BASE_DIR / "database" / "scanroll.db"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SCANROLL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SCANROLL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SCANROLL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SCANROLL_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = (os.getenv("SCANROLL_LOG_LEVEL", "INFO").strip() or "INFO").upper()

# Seconds a writer waits for the SQLite write lock before giving up.
DB_BUSY_TIMEOUT_SECONDS = max(0.0, _parse_float(os.getenv("SCANROLL_DB_BUSY_TIMEOUT_SECONDS"), 10.0))

RECENT_SCANS_LIMIT = max(1, int(os.getenv("SCANROLL_RECENT_SCANS_LIMIT", "5")))


@dataclass(frozen=True)
class NotificationSettings:
    email_api_url: str = "https://api.emailjs.com/api/v1.0/email/send"
    email_api_key: str = ""
    email_service_id: str = ""
    email_template_id: str = ""
    sms_api_url: str = "https://api.semaphore.co/api/v4"
    sms_api_key: str = ""
    sms_sender_name: str = "SEMAPHORE"
    timeout_seconds: float = 5.0

    @property
    def email_enabled(self) -> bool:
        # EmailJS rejects a send without all three.
        return bool(self.email_api_key and self.email_service_id and self.email_template_id)

    @property
    def sms_enabled(self) -> bool:
        return bool(self.sms_api_key)


def load_notification_settings(environ: dict[str, str] | None = None) -> NotificationSettings:
    """
    Build the notification settings from the environment.

    Called once at startup; the resulting value is handed to the dispatcher.
    """
    env = os.environ if environ is None else environ
    defaults = NotificationSettings()
    return NotificationSettings(
        email_api_url=(env.get("SCANROLL_EMAIL_API_URL") or defaults.email_api_url).strip(),
        email_api_key=(env.get("SCANROLL_EMAIL_API_KEY") or "").strip(),
        email_service_id=(env.get("SCANROLL_EMAIL_SERVICE_ID") or "").strip(),
        email_template_id=(env.get("SCANROLL_EMAIL_TEMPLATE_ID") or "").strip(),
        sms_api_url=(env.get("SCANROLL_SMS_API_URL") or defaults.sms_api_url).strip().rstrip("/"),
        sms_api_key=(env.get("SCANROLL_SMS_API_KEY") or "").strip(),
        sms_sender_name=(env.get("SCANROLL_SMS_SENDER_NAME") or defaults.sms_sender_name).strip(),
        timeout_seconds=max(0.5, _parse_float(env.get("SCANROLL_NOTIFY_TIMEOUT_SECONDS"), defaults.timeout_seconds)),
    )
