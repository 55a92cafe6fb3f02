from __future__ import annotations

import logging
import os

import pytest

from booking_notifications.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "CRON_SECRET": "prod-cron-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "NOTIFIER_SENDER_TYPE": "stub",
        "LEDGER_STORE_BACKEND": None,
        "SUBJECT_STORE_BACKEND": None,
    }


def test_create_app_starts_with_complete_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Glam Booking Notifications"
    finally:
        _restore_env(previous)


def test_create_app_enforce_mode_blocks_missing_cron_secret() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "CRON_SECRET": None})
    try:
        with pytest.raises(RuntimeError, match="CRON_SECRET is empty"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_enforce_mode_blocks_http_sender_without_credentials() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "NOTIFIER_SENDER_TYPE": "http",
            "EMAIL_API_BASE_URL": None,
            "EMAIL_API_KEY": None,
        }
    )
    try:
        with pytest.raises(RuntimeError, match="EMAIL_API_BASE_URL is required"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_warn_mode_logs_and_starts(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env({**_base_runtime_secret_env(), "CRON_SECRET": None, "RUNTIME_SECRET_GUARD_MODE": "warn"})
    try:
        with caplog.at_level(logging.WARNING, logger="booking_notifications.main"):
            app = create_app()
        assert app.title == "Glam Booking Notifications"
        assert "runtime secret guard warning: CRON_SECRET is empty" in caplog.text
    finally:
        _restore_env(previous)
