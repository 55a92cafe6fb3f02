from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LifecycleStatus = Literal["quoted", "confirmed", "cancelled"]
PaymentState = Literal["none", "deposit-pending", "deposit-paid", "payment-approved", "rejected"]
NotificationChannel = Literal["email", "whatsapp"]
NotificationKind = Literal[
    "followup-3h",
    "followup-6h",
    "followup-24h",
    "followup-3d",
    "followup-6d",
    "followup-30d",
    "event-reminder-24h",
    "appointment-day-reminder",
    "post-appointment-followup",
    "whatsapp-2w",
    "whatsapp-1w",
]
NotificationEventStatus = Literal["processing", "sent", "skipped", "failed"]

ADVANCE_PAYMENT_STATES: frozenset[str] = frozenset({"deposit-paid", "payment-approved"})


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Subject(BaseModel):
    """Booking fields the notification engine reads."""

    subject_id: str = Field(min_length=1, max_length=128)
    lifecycle_status: LifecycleStatus = "quoted"
    payment_state: PaymentState = "none"
    final_payment_state: PaymentState = "none"
    created_at: datetime
    event_date: date | None = None
    ready_time: str | None = Field(default=None, max_length=32)
    is_manual: bool = False
    client_name: str | None = Field(default=None, max_length=256)
    client_email: str | None = Field(default=None, max_length=256)
    client_phone: str | None = Field(default=None, max_length=64)

    @field_validator("subject_id")
    @classmethod
    def _strip_subject_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("subject_id cannot be blank")
        return normalized

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return _normalize_utc(value)  # type: ignore[return-value]

    @property
    def has_advance_payment(self) -> bool:
        return self.payment_state in ADVANCE_PAYMENT_STATES


class ReconcileResponse(BaseModel):
    subject_id: str
    inserted_kinds: list[NotificationKind]
    existing_kinds: list[NotificationKind]
    required_count: int


class ReconcileAllItem(BaseModel):
    subject_id: str
    inserted_count: int = 0
    error: str | None = None


class ReconcileAllResponse(BaseModel):
    subject_count: int
    inserted_count: int
    failed_count: int
    items: list[ReconcileAllItem]


class NotificationStatusItem(BaseModel):
    kind: NotificationKind
    channel: NotificationChannel
    scheduled: bool
    due_at: datetime | None = None
    sent: bool = False
    sent_at: datetime | None = None
    last_error: str | None = None
    attempts: int = 0


class SubjectNotificationsResponse(BaseModel):
    subject_id: str
    lifecycle_status: LifecycleStatus
    payment_state: PaymentState
    event_date: date | None = None
    notifications: list[NotificationStatusItem]


class BatchRunRequest(BaseModel):
    now_override: datetime | None = None
    time_budget_seconds: float | None = Field(default=None, gt=0, le=300)

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class BatchRunResponse(BaseModel):
    message: str
    run_at: datetime
    total_due: int
    processed: int
    skipped: int
    failed: int
    remaining: int
    errors: list[str] = Field(default_factory=list)
    execution_time_ms: int


class NotificationEventItem(BaseModel):
    event_id: int
    notification_id: int | None = None
    subject_id: str
    kind: NotificationKind
    status: NotificationEventStatus
    detail: str | None = None
    created_at: datetime


class NotificationEventListResponse(BaseModel):
    items: list[NotificationEventItem]
