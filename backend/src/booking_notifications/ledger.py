from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Protocol

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


class LedgerCommitError(RuntimeError):
    """Raised when a batched resolution could not be committed."""


@dataclass(frozen=True)
class ScheduledNotificationRecord:
    notification_id: int
    subject_id: str
    kind: str
    channel: str
    due_at: datetime
    sent: bool
    sent_at: datetime | None
    last_error: str | None
    attempts: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NotificationEventRecord:
    event_id: int
    notification_id: int | None
    subject_id: str
    kind: str
    status: str
    detail: str | None
    created_at: datetime


@dataclass(frozen=True)
class SentResolution:
    """A due row resolved in a batch; ``last_error`` carries the skip reason, if any."""

    notification_id: int
    last_error: str | None = None


class LedgerRepository(Protocol):
    def reset(self) -> None: ...

    def insert_if_absent(self, *, subject_id: str, kind: str, channel: str, due_at: datetime) -> bool: ...

    def get(self, notification_id: int) -> ScheduledNotificationRecord | None: ...

    def list_for_subject(self, subject_id: str) -> list[ScheduledNotificationRecord]: ...

    def list_due(self, now: datetime, *, limit: int | None = None) -> list[ScheduledNotificationRecord]: ...

    def count_due(self, now: datetime) -> int: ...

    def mark_sent_batch(self, resolutions: Iterable[SentResolution], *, sent_at: datetime) -> int: ...

    def mark_sent(self, notification_id: int, *, sent_at: datetime) -> bool: ...

    def mark_sent_with_error(self, notification_id: int, reason: str, *, sent_at: datetime) -> bool: ...

    def record_failure(self, notification_id: int, error: str) -> int: ...

    def record_event(
        self,
        *,
        notification_id: int | None,
        subject_id: str,
        kind: str,
        status: str,
        detail: str | None,
    ) -> None: ...

    def list_events(self, *, subject_id: str | None = None, limit: int = 100) -> list[NotificationEventRecord]: ...


class InMemoryLedgerRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._ids = count(1)
        self._event_ids = count(1)
        self._rows: dict[int, ScheduledNotificationRecord] = {}
        self._ids_by_key: dict[tuple[str, str], int] = {}
        self._events: list[NotificationEventRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._ids = count(1)
            self._event_ids = count(1)
            self._rows.clear()
            self._ids_by_key.clear()
            self._events.clear()

    def insert_if_absent(self, *, subject_id: str, kind: str, channel: str, due_at: datetime) -> bool:
        key = (subject_id, kind)
        with self._lock:
            if key in self._ids_by_key:
                return False
            now = _now_utc()
            notification_id = next(self._ids)
            self._rows[notification_id] = ScheduledNotificationRecord(
                notification_id=notification_id,
                subject_id=subject_id,
                kind=kind,
                channel=channel,
                due_at=_coerce_utc(due_at),
                sent=False,
                sent_at=None,
                last_error=None,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            self._ids_by_key[key] = notification_id
            return True

    def get(self, notification_id: int) -> ScheduledNotificationRecord | None:
        with self._lock:
            return self._rows.get(notification_id)

    def list_for_subject(self, subject_id: str) -> list[ScheduledNotificationRecord]:
        with self._lock:
            rows = [row for row in self._rows.values() if row.subject_id == subject_id]
        return sorted(rows, key=lambda value: (value.due_at, value.notification_id))

    def list_due(self, now: datetime, *, limit: int | None = None) -> list[ScheduledNotificationRecord]:
        cutoff = _coerce_utc(now)
        with self._lock:
            rows = [row for row in self._rows.values() if not row.sent and row.due_at <= cutoff]
        rows.sort(key=lambda value: (value.due_at, value.notification_id))
        return rows[:limit] if limit is not None else rows

    def count_due(self, now: datetime) -> int:
        cutoff = _coerce_utc(now)
        with self._lock:
            return sum(1 for row in self._rows.values() if not row.sent and row.due_at <= cutoff)

    def mark_sent_batch(self, resolutions: Iterable[SentResolution], *, sent_at: datetime) -> int:
        updated = 0
        with self._lock:
            for resolution in resolutions:
                if self._resolve_locked(resolution.notification_id, resolution.last_error, sent_at):
                    updated += 1
        return updated

    def mark_sent(self, notification_id: int, *, sent_at: datetime) -> bool:
        with self._lock:
            return self._resolve_locked(notification_id, None, sent_at)

    def mark_sent_with_error(self, notification_id: int, reason: str, *, sent_at: datetime) -> bool:
        with self._lock:
            return self._resolve_locked(notification_id, reason, sent_at)

    def record_failure(self, notification_id: int, error: str) -> int:
        with self._lock:
            row = self._rows[notification_id]
            if row.sent:
                return row.attempts
            updated = ScheduledNotificationRecord(
                **{
                    **row.__dict__,
                    "last_error": error,
                    "attempts": row.attempts + 1,
                    "updated_at": _now_utc(),
                }
            )
            self._rows[notification_id] = updated
            return updated.attempts

    def record_event(
        self,
        *,
        notification_id: int | None,
        subject_id: str,
        kind: str,
        status: str,
        detail: str | None,
    ) -> None:
        with self._lock:
            self._events.append(
                NotificationEventRecord(
                    event_id=next(self._event_ids),
                    notification_id=notification_id,
                    subject_id=subject_id,
                    kind=kind,
                    status=status,
                    detail=detail,
                    created_at=_now_utc(),
                )
            )

    def list_events(self, *, subject_id: str | None = None, limit: int = 100) -> list[NotificationEventRecord]:
        with self._lock:
            events = [
                event for event in self._events if subject_id is None or event.subject_id == subject_id
            ]
        events.reverse()
        return events[:limit]

    def _resolve_locked(self, notification_id: int, last_error: str | None, sent_at: datetime) -> bool:
        row = self._rows.get(notification_id)
        if row is None or row.sent:
            return False
        self._rows[notification_id] = ScheduledNotificationRecord(
            **{
                **row.__dict__,
                "sent": True,
                "sent_at": _coerce_utc(sent_at),
                "last_error": last_error,
                "updated_at": _now_utc(),
            }
        )
        return True


class LedgerBase(DeclarativeBase):
    pass


class _ScheduledNotificationRow(LedgerBase):
    __tablename__ = "scheduled_notifications"
    __table_args__ = (UniqueConstraint("subject_id", "kind", name="uq_scheduled_notifications_subject_kind"),)

    notification_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _NotificationEventRow(LedgerBase):
    __tablename__ = "notification_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _ScheduledNotificationRow) -> ScheduledNotificationRecord:
    return ScheduledNotificationRecord(
        notification_id=row.notification_id,
        subject_id=row.subject_id,
        kind=row.kind,
        channel=row.channel,
        due_at=_coerce_utc(row.due_at),
        sent=row.sent,
        sent_at=_coerce_optional_utc(row.sent_at),
        last_error=row.last_error,
        attempts=row.attempts,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyLedgerRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for LEDGER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationEventRow).delete()
                session.query(_ScheduledNotificationRow).delete()

    def insert_if_absent(self, *, subject_id: str, kind: str, channel: str, due_at: datetime) -> bool:
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _ScheduledNotificationRow(
                            subject_id=subject_id,
                            kind=kind,
                            channel=channel,
                            due_at=_coerce_utc(due_at),
                            sent=False,
                            sent_at=None,
                            last_error=None,
                            attempts=0,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except IntegrityError:
            # Another reconcile created the row first.
            return False
        return True

    def get(self, notification_id: int) -> ScheduledNotificationRecord | None:
        with self._session() as session:
            row = session.get(_ScheduledNotificationRow, notification_id)
            return _to_record(row) if row is not None else None

    def list_for_subject(self, subject_id: str) -> list[ScheduledNotificationRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduledNotificationRow)
                .where(_ScheduledNotificationRow.subject_id == subject_id)
                .order_by(_ScheduledNotificationRow.due_at.asc(), _ScheduledNotificationRow.notification_id.asc())
            ).scalars()
            return [_to_record(row) for row in rows]

    def list_due(self, now: datetime, *, limit: int | None = None) -> list[ScheduledNotificationRecord]:
        query = (
            select(_ScheduledNotificationRow)
            .where(_ScheduledNotificationRow.sent.is_(False))
            .where(_ScheduledNotificationRow.due_at <= _coerce_utc(now))
            .order_by(_ScheduledNotificationRow.due_at.asc(), _ScheduledNotificationRow.notification_id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return [_to_record(row) for row in session.execute(query).scalars()]

    def count_due(self, now: datetime) -> int:
        with self._session() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(_ScheduledNotificationRow)
                    .where(_ScheduledNotificationRow.sent.is_(False))
                    .where(_ScheduledNotificationRow.due_at <= _coerce_utc(now))
                ).scalar_one()
            )

    def mark_sent_batch(self, resolutions: Iterable[SentResolution], *, sent_at: datetime) -> int:
        ids_by_error: dict[str | None, list[int]] = {}
        for resolution in resolutions:
            ids_by_error.setdefault(resolution.last_error, []).append(resolution.notification_id)
        if not ids_by_error:
            return 0

        now = _now_utc()
        updated = 0
        try:
            with self._session() as session:
                with session.begin():
                    for last_error, ids in ids_by_error.items():
                        result = session.execute(
                            update(_ScheduledNotificationRow)
                            .where(_ScheduledNotificationRow.notification_id.in_(ids))
                            .where(_ScheduledNotificationRow.sent.is_(False))
                            .values(sent=True, sent_at=_coerce_utc(sent_at), last_error=last_error, updated_at=now)
                            .execution_options(synchronize_session=False)
                        )
                        updated += result.rowcount or 0
        except SQLAlchemyError as exc:
            raise LedgerCommitError(f"batch resolution failed: {exc}") from exc
        return updated

    def mark_sent(self, notification_id: int, *, sent_at: datetime) -> bool:
        return self._resolve(notification_id, None, sent_at)

    def mark_sent_with_error(self, notification_id: int, reason: str, *, sent_at: datetime) -> bool:
        return self._resolve(notification_id, reason, sent_at)

    def record_failure(self, notification_id: int, error: str) -> int:
        with self._session() as session:
            with session.begin():
                row = session.get(_ScheduledNotificationRow, notification_id)
                if row is None:
                    raise KeyError(notification_id)
                if row.sent:
                    return row.attempts
                row.attempts = row.attempts + 1
                row.last_error = error
                row.updated_at = _now_utc()
                return row.attempts

    def record_event(
        self,
        *,
        notification_id: int | None,
        subject_id: str,
        kind: str,
        status: str,
        detail: str | None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _NotificationEventRow(
                        notification_id=notification_id,
                        subject_id=subject_id,
                        kind=kind,
                        status=status,
                        detail=detail,
                        created_at=_now_utc(),
                    )
                )

    def list_events(self, *, subject_id: str | None = None, limit: int = 100) -> list[NotificationEventRecord]:
        query = select(_NotificationEventRow).order_by(_NotificationEventRow.event_id.desc()).limit(limit)
        if subject_id is not None:
            query = query.where(_NotificationEventRow.subject_id == subject_id)
        with self._session() as session:
            return [
                NotificationEventRecord(
                    event_id=row.event_id,
                    notification_id=row.notification_id,
                    subject_id=row.subject_id,
                    kind=row.kind,
                    status=row.status,
                    detail=row.detail,
                    created_at=_coerce_utc(row.created_at),
                )
                for row in session.execute(query).scalars()
            ]

    def _resolve(self, notification_id: int, last_error: str | None, sent_at: datetime) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ScheduledNotificationRow)
                    .where(_ScheduledNotificationRow.notification_id == notification_id)
                    .where(_ScheduledNotificationRow.sent.is_(False))
                    .values(sent=True, sent_at=_coerce_utc(sent_at), last_error=last_error, updated_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                return bool(result.rowcount)


def create_ledger_repository(*, backend: str, database_url: str) -> LedgerRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyLedgerRepository(database_url)
    if normalized == "inmemory":
        return InMemoryLedgerRepository()
    raise RuntimeError(f"unsupported LEDGER_STORE_BACKEND: {backend}")
