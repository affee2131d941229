from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Protocol

from .config import Settings
from .email_templates import EmailAttachment

logger = logging.getLogger(__name__)

DeliveryStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ReminderEmail:
    to: str
    subject: str
    text_body: str
    event_id: str
    user_id: str
    attachments: tuple[EmailAttachment, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "sent"


class NotifierSender(Protocol):
    """Delivers one reminder email.

    Ordinary delivery failures are reported as a failed result; raising is
    reserved for misconfiguration.
    """

    def send_event_reminder(self, message: ReminderEmail) -> DeliveryResult: ...


class StubNotifierSender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[ReminderEmail] = []

    def send_event_reminder(self, message: ReminderEmail) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live reminder delivery is disabled",
            )

        if "fail" in message.to.lower():
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(message)
        message_id = f"stub-{message.event_id}-{message.user_id}-{int(attempted_at.timestamp())}"
        return DeliveryResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _DeliveryError(Exception):
    """Internal error raised when a mail provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpNotifierSender:
    """Sends reminder emails through a transactional mail provider's HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = from_address.strip()
        self._timeout_seconds = timeout_seconds

    def send_event_reminder(self, message: ReminderEmail) -> DeliveryResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "from": self._from_address,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text_body,
            "attachments": [
                {
                    "filename": attachment.filename,
                    "content": attachment.content,
                    "content_type": attachment.content_type,
                }
                for attachment in message.attachments
            ],
            "idempotency_key": f"event-reminder-{message.event_id}-{message.user_id}",
        }

        try:
            response_data = self._post(request_payload)
        except _DeliveryError as exc:
            return DeliveryResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_email(message.to)})",
            )
        message_id = response_data.get("message_id") or response_data.get("id")
        return DeliveryResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(message_id) if message_id else None,
        )

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}/v1/mail/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _DeliveryError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _DeliveryError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _DeliveryError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("notifier_unparseable_response: %s", raw[:200])
            return {}
        return parsed if isinstance(parsed, dict) else {}


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


def create_notifier(settings: Settings) -> NotifierSender:
    sender_type = settings.notifier_sender_type.strip().lower()
    if sender_type == "http":
        return HttpNotifierSender(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            from_address=settings.notifier_from_address,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    if sender_type == "stub":
        return StubNotifierSender(enabled=settings.notifier_enabled)
    raise RuntimeError(f"unsupported NOTIFIER_SENDER_TYPE: {settings.notifier_sender_type}")
