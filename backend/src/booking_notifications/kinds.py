from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import NotificationChannel, NotificationKind

KindFamily = Literal["followup", "event", "urgency"]
KindAnchor = Literal["created", "event_day", "appointment"]

_TWELVE_HOUR_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)$", re.IGNORECASE)
_TWENTY_FOUR_HOUR_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?(?::\d{2})?$")
_FALLBACK_READY_TIME = time(10, 0)


@dataclass(frozen=True)
class KindSpec:
    kind: NotificationKind
    channel: NotificationChannel
    family: KindFamily
    anchor: KindAnchor
    offset: timedelta

    def due_at(self, anchor_at: datetime) -> datetime:
        return anchor_at + self.offset


KIND_SPECS: tuple[KindSpec, ...] = (
    KindSpec("followup-3h", "email", "followup", "created", timedelta(hours=3)),
    KindSpec("followup-6h", "email", "followup", "created", timedelta(hours=6)),
    KindSpec("followup-24h", "email", "followup", "created", timedelta(hours=24)),
    KindSpec("followup-3d", "email", "followup", "created", timedelta(days=3)),
    KindSpec("followup-6d", "email", "followup", "created", timedelta(days=6)),
    KindSpec("followup-30d", "email", "followup", "created", timedelta(days=30)),
    KindSpec("event-reminder-24h", "email", "event", "event_day", -timedelta(hours=24)),
    KindSpec("appointment-day-reminder", "email", "event", "appointment", -timedelta(hours=2, minutes=30)),
    KindSpec("post-appointment-followup", "email", "event", "appointment", timedelta(hours=6)),
    KindSpec("whatsapp-2w", "whatsapp", "urgency", "event_day", -timedelta(days=14)),
    KindSpec("whatsapp-1w", "whatsapp", "urgency", "event_day", -timedelta(days=7)),
)

KIND_SPECS_BY_KIND: dict[str, KindSpec] = {spec.kind: spec for spec in KIND_SPECS}
ALL_KINDS: tuple[NotificationKind, ...] = tuple(spec.kind for spec in KIND_SPECS)


def kind_spec(kind: str) -> KindSpec:
    try:
        return KIND_SPECS_BY_KIND[kind]
    except KeyError as exc:
        raise ValueError(f"unknown notification kind: {kind}") from exc


def resolve_timezone(zone_name: str | None) -> tzinfo:
    if not zone_name:
        return timezone.utc
    try:
        return ZoneInfo(zone_name)
    except ZoneInfoNotFoundError:
        return timezone.utc


def parse_ready_time(value: str | None, *, default: time = _FALLBACK_READY_TIME) -> time:
    """Parse "14:30", "9:00:00" or "2:30 PM"; anything else yields ``default``."""
    if not value:
        return default
    normalized = value.strip()
    match = _TWELVE_HOUR_RE.match(normalized)
    if match is not None:
        hours = int(match.group(1))
        minutes = int(match.group(2))
        meridiem = match.group(3).upper()
        if not 1 <= hours <= 12:
            return default
        if meridiem == "PM" and hours != 12:
            hours += 12
        elif meridiem == "AM" and hours == 12:
            hours = 0
    else:
        match = _TWENTY_FOUR_HOUR_RE.match(normalized)
        if match is None:
            return default
        hours = int(match.group(1))
        minutes = int(match.group(2) or "0")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return default
    return time(hours, minutes)


def event_day_start(event_date: date, zone: tzinfo) -> datetime:
    return datetime.combine(event_date, time.min, tzinfo=zone).astimezone(timezone.utc)


def appointment_start(event_date: date, ready_time: str | None, zone: tzinfo, *, default_ready_time: str) -> datetime:
    fallback = parse_ready_time(default_ready_time)
    local_time = parse_ready_time(ready_time, default=fallback)
    return datetime.combine(event_date, local_time, tzinfo=zone).astimezone(timezone.utc)
