from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Mapping, Protocol

from .kinds import kind_spec
from .models import NotificationChannel, Subject

TransportResultStatus = Literal["sent", "failed"]

_EMAIL_SUBJECTS: dict[str, str] = {
    "followup-3h": "Your makeup quote is ready",
    "followup-6h": "Any questions about your quote?",
    "followup-24h": "Still thinking about your booking?",
    "followup-3d": "Your date is still available",
    "followup-6d": "Last chance to hold your date",
    "followup-30d": "Checking in on your event",
    "event-reminder-24h": "Your appointment is tomorrow",
    "appointment-day-reminder": "See you soon today",
    "post-appointment-followup": "Thank you for booking with us",
}

_WHATSAPP_MESSAGES: dict[str, str] = {
    "whatsapp-2w": "Hi {name}, your event is two weeks away and your date is not secured yet. "
    "Reply here to confirm your booking.",
    "whatsapp-1w": "Hi {name}, your event is one week away. Secure your date today with the advance payment.",
}


@dataclass(frozen=True)
class TransportResult:
    status: TransportResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def error(self) -> str:
        if self.error_code and self.error_message:
            return f"{self.error_code}: {self.error_message}"
        return self.error_message or self.error_code or "unknown transport error"


class NotificationTransport(Protocol):
    def send(self, kind: str, subject: Subject) -> TransportResult: ...


def recipient_for(channel: str, subject: Subject) -> str | None:
    target = subject.client_phone if channel == "whatsapp" else subject.client_email
    if target is None or not target.strip():
        return None
    return target.strip()


def _failed(error_code: str, error_message: str) -> TransportResult:
    return TransportResult(
        status="failed",
        attempted_at=datetime.now(timezone.utc),
        error_code=error_code,
        error_message=error_message,
    )


def _missing_recipient(channel: str) -> TransportResult:
    field = "client_phone" if channel == "whatsapp" else "client_email"
    return _failed("missing_recipient", f"booking has no {field} for {channel} delivery")


class StubTransport:
    """Local transport; any recipient containing "fail" is rejected."""

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[tuple[str, str]] = []

    def send(self, kind: str, subject: Subject) -> TransportResult:
        if not self._enabled:
            return _failed("notifier_disabled", "live notification delivery is disabled")

        channel = kind_spec(kind).channel
        target = recipient_for(channel, subject)
        if target is None:
            return _missing_recipient(channel)
        if "fail" in target.lower():
            return _failed("stub_delivery_failed", "Stub transport forced failure for recipient")

        attempted_at = datetime.now(timezone.utc)
        self.sent.append((subject.subject_id, kind))
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-{subject.subject_id}-{kind}",
        )


class _TransportSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class _HttpTransport:
    channel: NotificationChannel = "email"
    endpoint = "/v1/messages/send"

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send(self, kind: str, subject: Subject) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        target = recipient_for(self.channel, subject)
        if target is None:
            return _missing_recipient(self.channel)

        body = self._build_payload(kind, subject, target)
        # Same key for every attempt at a row.
        body["idempotency_key"] = f"booking-{subject.subject_id}-{kind}"
        try:
            response_data = self._post(body)
        except _TransportSendError as exc:
            masked = mask_recipient(target, self.channel)
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
            )
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id") or response_data.get("id"),
        )

    def _build_payload(self, kind: str, subject: Subject, target: str) -> dict[str, object]:
        raise NotImplementedError

    def _post(self, body: Mapping[str, object]) -> dict[str, str]:
        url = f"{self._base_url}{self.endpoint}"
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
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _TransportSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _TransportSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _TransportSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _TransportSendError(
                error_code="invalid_response",
                message=f"Provider returned invalid JSON: {exc}",
            ) from exc


class HttpEmailTransport(_HttpTransport):
    channel: NotificationChannel = "email"
    endpoint = "/v1/emails/send"

    def _build_payload(self, kind: str, subject: Subject, target: str) -> dict[str, object]:
        name = subject.client_name or "there"
        event_line = f" for {subject.event_date.isoformat()}" if subject.event_date else ""
        return {
            "to": target,
            "subject": _EMAIL_SUBJECTS.get(kind, "An update about your booking"),
            "text": f"Hi {name}, this is an update about your makeup booking{event_line}.",
            "tags": {"kind": kind, "booking_id": subject.subject_id},
        }


class HttpWhatsAppTransport(_HttpTransport):
    channel: NotificationChannel = "whatsapp"
    endpoint = "/v1/messages/send"

    def _build_payload(self, kind: str, subject: Subject, target: str) -> dict[str, object]:
        template = _WHATSAPP_MESSAGES.get(kind, "Hi {name}, there is an update about your booking.")
        return {
            "channel": "whatsapp",
            "recipient": target,
            "message": template.format(name=subject.client_name or "there"),
        }


class ChannelRouter:
    """Dispatches each kind to the transport registered for its channel."""

    def __init__(self, transports: Mapping[str, NotificationTransport]) -> None:
        self._transports = dict(transports)

    def send(self, kind: str, subject: Subject) -> TransportResult:
        channel = kind_spec(kind).channel
        transport = self._transports.get(channel)
        if transport is None:
            return _failed(
                "channel_not_configured",
                f"Channel '{channel}' is not configured; available channels: {', '.join(sorted(self._transports))}",
            )
        if recipient_for(channel, subject) is None:
            return _missing_recipient(channel)
        return transport.send(kind, subject)


def mask_recipient(target: str, channel: str) -> str:
    normalized = target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "whatsapp":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
