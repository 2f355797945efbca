import logging
from typing import Protocol, TypedDict

import httpx

from backend.config import NotificationSettings

logger = logging.getLogger(__name__)


class SendResult(TypedDict, total=False):
    success: bool
    error: str | None
    message_id: str | None


class EmailSender(Protocol):
    name: str

    def send(self, to: str, subject: str, html_body: str) -> SendResult:
        ...


class SmsSender(Protocol):
    name: str

    def send(self, phone_number: str, message: str, sender_name: str) -> SendResult:
        ...


class HttpEmailSender:
    """EmailJS-style HTTP email provider."""

    name = "EmailJS"

    def __init__(self, settings: NotificationSettings, client: httpx.Client | None = None):
        self._settings = settings
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)

    def send(self, to: str, subject: str, html_body: str) -> SendResult:
        if not self._settings.email_enabled:
            return {"success": False, "error": "Email service not configured"}

        payload = {
            "service_id": self._settings.email_service_id,
            "template_id": self._settings.email_template_id,
            "user_id": self._settings.email_api_key,
            "template_params": {
                "to_email": to,
                "subject": subject,
                "message": html_body,
            },
        }
        try:
            response = self._client.post(
                self._settings.email_api_url,
                json=payload,
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException:
            return {"success": False, "error": "Email service timed out"}
        except httpx.HTTPError as exc:
            return {"success": False, "error": f"Email transport error: {exc}"}

        if response.is_success:
            return {"success": True, "error": None}
        return {"success": False, "error": f"Email service responded with status: {response.status_code}"}

    def close(self) -> None:
        self._client.close()


class SemaphoreSmsSender:
    """Semaphore (api.semaphore.co) SMS provider."""

    name = "Semaphore SMS API"

    def __init__(self, settings: NotificationSettings, client: httpx.Client | None = None):
        self._settings = settings
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)

    def send(self, phone_number: str, message: str, sender_name: str) -> SendResult:
        if not self._settings.sms_api_key:
            return {"success": False, "error": "SMS service not configured"}

        form = {
            "apikey": self._settings.sms_api_key,
            "number": phone_number,
            "message": message,
            "sendername": sender_name or self._settings.sms_sender_name,
        }
        try:
            response = self._client.post(
                f"{self._settings.sms_api_url}/messages",
                data=form,
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException:
            return {"success": False, "error": "SMS service timed out"}
        except httpx.HTTPError as exc:
            return {"success": False, "error": f"SMS transport error: {exc}"}

        try:
            body = response.json()
        except ValueError:
            body = None

        first = body[0] if isinstance(body, list) and body else None
        if response.is_success and isinstance(first, dict) and first.get("message_id"):
            return {"success": True, "error": None, "message_id": str(first["message_id"])}

        error = "Unknown error occurred"
        if isinstance(body, dict):
            error = str(body.get("message") or body.get("error") or error)
        elif not response.is_success:
            error = f"SMS service responded with status: {response.status_code}"
        return {"success": False, "error": error}

    def close(self) -> None:
        self._client.close()
