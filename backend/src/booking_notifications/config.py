from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Glam Booking Notifications"
    api_prefix: str = "/api/v1"
    database_url: str = ""
    ledger_store_backend: str = "inmemory"
    subject_store_backend: str = "inmemory"
    business_timezone: str = "America/Toronto"
    default_ready_time: str = "10:00"
    # Batch processor settings.
    batch_concurrency: int = 5
    batch_time_budget_seconds: float = 9.0
    batch_error_limit: int = 10
    # 0 keeps transient failures retrying on every run.
    max_attempts: int = 0
    allow_now_override: bool = False
    # Transport settings.
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_timeout_seconds: int = 30
    email_api_base_url: str = ""
    email_api_key: str = ""
    whatsapp_api_base_url: str = ""
    whatsapp_api_key: str = ""
    cron_secret: str = ""
    runtime_secret_guard_mode: str = "warn"

    def transport_credentials(self, channel: str) -> tuple[str, str]:
        normalized = channel.strip().lower()
        if normalized == "whatsapp":
            return self.whatsapp_api_base_url.strip(), self.whatsapp_api_key.strip()
        return self.email_api_base_url.strip(), self.email_api_key.strip()


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFY_APP_NAME", "Glam Booking Notifications"),
        api_prefix=os.getenv("NOTIFY_API_PREFIX", "/api/v1"),
        database_url=os.getenv("DATABASE_URL", ""),
        ledger_store_backend=os.getenv("LEDGER_STORE_BACKEND", "inmemory"),
        subject_store_backend=os.getenv("SUBJECT_STORE_BACKEND", "inmemory"),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "America/Toronto"),
        default_ready_time=os.getenv("DEFAULT_READY_TIME", "10:00"),
        batch_concurrency=max(1, _as_int(os.getenv("NOTIFICATION_BATCH_CONCURRENCY"), 5)),
        batch_time_budget_seconds=max(1.0, _as_float(os.getenv("NOTIFICATION_BATCH_TIME_BUDGET_SECONDS"), 9.0)),
        batch_error_limit=max(0, _as_int(os.getenv("NOTIFICATION_ERROR_LIMIT"), 10)),
        max_attempts=max(0, _as_int(os.getenv("NOTIFICATION_MAX_ATTEMPTS"), 0)),
        allow_now_override=_as_bool(os.getenv("NOTIFICATION_ALLOW_NOW_OVERRIDE"), False),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", ""),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", ""),
        whatsapp_api_key=os.getenv("WHATSAPP_API_KEY", ""),
        cron_secret=os.getenv("CRON_SECRET", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a placeholder value")
    if settings.notifier_sender_type == "http":
        for channel, env_prefix in (("email", "EMAIL"), ("whatsapp", "WHATSAPP")):
            base_url, api_key = settings.transport_credentials(channel)
            if not base_url:
                issues.append(f"{env_prefix}_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
            if _is_placeholder(api_key, defaults=set()):
                issues.append(f"{env_prefix}_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    needs_database = {
        settings.ledger_store_backend.strip().lower(),
        settings.subject_store_backend.strip().lower(),
    }
    if "postgres" in needs_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when a store backend is postgres")
    return tuple(issues)
