from __future__ import annotations

import json
import socket
import urllib.error
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from booking_notifications.models import Subject
from booking_notifications.transport import (
    ChannelRouter,
    HttpEmailTransport,
    HttpWhatsAppTransport,
    StubTransport,
    mask_recipient,
)


def _subject(**overrides: object) -> Subject:
    values: dict[str, object] = {
        "subject_id": "booking-001",
        "created_at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        "event_date": date(2026, 6, 20),
        "client_name": "Amira",
        "client_email": "amira@example.com",
        "client_phone": "+1 416 555 0123",
    }
    values.update(overrides)
    return Subject(**values)  # type: ignore[arg-type]


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _email_transport() -> HttpEmailTransport:
    return HttpEmailTransport(base_url="https://mail.example.test/", api_key="mail-key-123")


def _whatsapp_transport() -> HttpWhatsAppTransport:
    return HttpWhatsAppTransport(base_url="https://wa.example.test", api_key="wa-key-456")


@patch("booking_notifications.transport.urllib.request.urlopen")
def test_http_email_transport_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "email-789"})

    result = _email_transport().send("followup-24h", _subject())

    assert result.status == "sent"
    assert result.provider_message_id == "email-789"
    assert result.attempted_at.tzinfo == timezone.utc
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://mail.example.test/v1/emails/send"
    assert request_arg.get_header("Authorization") == "Bearer mail-key-123"
    body = json.loads(request_arg.data.decode("utf-8"))
    assert body["to"] == "amira@example.com"
    assert body["tags"] == {"kind": "followup-24h", "booking_id": "booking-001"}
    assert body["idempotency_key"] == "booking-booking-001-followup-24h"
    assert "Amira" in body["text"]


@patch("booking_notifications.transport.urllib.request.urlopen")
def test_http_whatsapp_transport_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"id": "wa-1"})

    result = _whatsapp_transport().send("whatsapp-2w", _subject())

    assert result.status == "sent"
    assert result.provider_message_id == "wa-1"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://wa.example.test/v1/messages/send"
    body = json.loads(request_arg.data.decode("utf-8"))
    assert body["channel"] == "whatsapp"
    assert body["recipient"] == "+1 416 555 0123"
    assert "two weeks" in body["message"]


@patch("booking_notifications.transport.urllib.request.urlopen")
def test_http_transport_maps_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://mail.example.test/v1/emails/send",
        code=503,
        msg="Service Unavailable",
        hdrs=None,  # type: ignore[arg-type]
        fp=None,
    )

    result = _email_transport().send("followup-3h", _subject())

    assert result.status == "failed"
    assert result.error_code == "http_503"
    assert result.error_message == "HTTP 503: Service Unavailable (recipient: a***@example.com)"


@patch("booking_notifications.transport.urllib.request.urlopen")
def test_http_transport_maps_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    result = _whatsapp_transport().send("whatsapp-1w", _subject())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "***0123" in (result.error_message or "")


@patch("booking_notifications.transport.urllib.request.urlopen")
def test_http_transport_maps_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _email_transport().send("followup-3h", _subject())

    assert result.status == "failed"
    assert result.error_code == "timeout"


@patch("booking_notifications.transport.urllib.request.urlopen")
def test_http_transport_fails_without_recipient(mock_urlopen: MagicMock) -> None:
    result = _email_transport().send("followup-3h", _subject(client_email=None))

    assert result.status == "failed"
    assert result.error_code == "missing_recipient"
    mock_urlopen.assert_not_called()


def test_http_transport_requires_credentials() -> None:
    with pytest.raises(ValueError):
        HttpEmailTransport(base_url="", api_key="key")
    with pytest.raises(ValueError):
        HttpWhatsAppTransport(base_url="https://wa.example.test", api_key="  ")


def test_stub_transport_behaviour() -> None:
    disabled = StubTransport(enabled=False)
    assert disabled.send("followup-3h", _subject()).error_code == "notifier_disabled"

    stub = StubTransport(enabled=True)
    assert stub.send("followup-3h", _subject()).status == "sent"
    assert stub.send("followup-3h", _subject(client_email="fail@example.com")).error_code == "stub_delivery_failed"
    assert stub.send("whatsapp-2w", _subject(client_phone="")).error_code == "missing_recipient"
    assert stub.sent == [("booking-001", "followup-3h")]


def test_channel_router_dispatches_by_kind_channel() -> None:
    email = StubTransport(enabled=True)
    whatsapp = StubTransport(enabled=True)
    router = ChannelRouter({"email": email, "whatsapp": whatsapp})

    router.send("event-reminder-24h", _subject())
    router.send("whatsapp-1w", _subject())

    assert email.sent == [("booking-001", "event-reminder-24h")]
    assert whatsapp.sent == [("booking-001", "whatsapp-1w")]


def test_channel_router_failures() -> None:
    router = ChannelRouter({"email": StubTransport(enabled=True)})

    unconfigured = router.send("whatsapp-2w", _subject())
    missing = router.send("followup-3h", _subject(client_email=" "))

    assert unconfigured.status == "failed"
    assert unconfigured.error_code == "channel_not_configured"
    assert missing.error_code == "missing_recipient"


@pytest.mark.parametrize(
    ("target", "channel", "expected"),
    [
        ("amira@example.com", "email", "a***@example.com"),
        ("a@example.com", "email", "*@example.com"),
        ("+1 416 555 0123", "whatsapp", "***0123"),
        ("abc", "whatsapp", "***"),
        ("", "email", "***"),
    ],
)
def test_mask_recipient(target: str, channel: str, expected: str) -> None:
    assert mask_recipient(target, channel) == expected
