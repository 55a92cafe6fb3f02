"""Scheduling policy for booking notifications.

Each kind belongs to a family, and each family has two predicates:

* an *existence* predicate, evaluated when the scheduler reconciles a booking,
  deciding whether a ledger row should exist at all;
* a *send* predicate, evaluated by the batch processor when the row comes due,
  deciding whether to dispatch or resolve the row as a hard skip.

Payment and status change between scheduling and the due time, so follow-ups
are scheduled unconditionally and only checked at send time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable

from .config import Settings
from .kinds import KIND_SPECS, KindSpec, appointment_start, event_day_start, kind_spec, resolve_timezone
from .models import NotificationKind, Subject

SKIP_SUBJECT_NOT_FOUND = "subject not found"
SKIP_CANCELLED = "booking is cancelled"
SKIP_MANUAL = "manual booking excluded from automated notifications"
SKIP_ADVANCE_PAYMENT_MADE = "advance payment already made"
SKIP_NOT_CONFIRMED = "booking not confirmed"
SKIP_NO_ADVANCE_PAYMENT = "no advance payment"


def _lead_skip_reason(subject: Subject) -> str | None:
    # Payment is reported first: a paid booking is usually confirmed too.
    if subject.has_advance_payment:
        return SKIP_ADVANCE_PAYMENT_MADE
    if subject.lifecycle_status != "quoted":
        return f"status is {subject.lifecycle_status}, not quoted"
    return None


def _event_skip_reason(subject: Subject) -> str | None:
    if subject.lifecycle_status != "confirmed":
        return SKIP_NOT_CONFIRMED
    if not subject.has_advance_payment:
        return SKIP_NO_ADVANCE_PAYMENT
    return None


_SEND_PREDICATES: dict[str, Callable[[Subject], str | None]] = {
    "followup": _lead_skip_reason,
    "urgency": _lead_skip_reason,
    "event": _event_skip_reason,
}


@dataclass(frozen=True)
class SchedulingPolicy:
    zone: tzinfo
    default_ready_time: str = "10:00"

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulingPolicy:
        return cls(
            zone=resolve_timezone(settings.business_timezone),
            default_ready_time=settings.default_ready_time,
        )

    def anchor_for(self, spec: KindSpec, subject: Subject) -> datetime | None:
        if spec.anchor == "created":
            return subject.created_at
        if subject.event_date is None:
            return None
        if spec.anchor == "event_day":
            return event_day_start(subject.event_date, self.zone)
        return appointment_start(
            subject.event_date,
            subject.ready_time,
            self.zone,
            default_ready_time=self.default_ready_time,
        )

    def required_notifications(self, subject: Subject, *, now: datetime) -> dict[NotificationKind, datetime]:
        """Return the kinds that should have a ledger row, mapped to their due time."""
        if subject.lifecycle_status == "cancelled" or subject.is_manual:
            return {}

        required: dict[NotificationKind, datetime] = {}
        for spec in KIND_SPECS:
            anchor_at = self.anchor_for(spec, subject)
            if anchor_at is None:
                continue
            due_at = spec.due_at(anchor_at)
            if self._should_exist(spec, subject, due_at=due_at, now=now):
                required[spec.kind] = due_at
        return required

    def send_skip_reason(self, kind: str, subject: Subject | None) -> str | None:
        """Return why a due row must be resolved without sending, or None to dispatch."""
        if subject is None:
            return SKIP_SUBJECT_NOT_FOUND
        if subject.lifecycle_status == "cancelled":
            return SKIP_CANCELLED
        if subject.is_manual:
            return SKIP_MANUAL
        spec = kind_spec(kind)
        return _SEND_PREDICATES[spec.family](subject)

    def _should_exist(self, spec: KindSpec, subject: Subject, *, due_at: datetime, now: datetime) -> bool:
        if spec.family == "followup":
            return True
        if spec.family == "urgency":
            # Only while the event is further away than the reminder's offset.
            return due_at > now
        if subject.lifecycle_status != "confirmed":
            return False
        if spec.kind == "event-reminder-24h":
            return due_at > now
        if spec.kind == "appointment-day-reminder":
            return due_at > now or self._is_event_today(subject, now)
        return True

    def _is_event_today(self, subject: Subject, now: datetime) -> bool:
        if subject.event_date is None:
            return False
        return now.astimezone(self.zone).date() == subject.event_date
