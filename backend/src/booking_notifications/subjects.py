from __future__ import annotations

from datetime import date, datetime, timezone
from threading import Lock
from typing import Iterable, Protocol

from sqlalchemy import Boolean, Date, DateTime, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import Subject


class SubjectNotFoundError(KeyError):
    pass


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubjectStore(Protocol):
    def reset(self) -> None: ...

    def get_subject(self, subject_id: str) -> Subject | None: ...

    def get_subjects_batch(self, subject_ids: Iterable[str]) -> dict[str, Subject | None]: ...

    def upsert_subject(self, subject: Subject) -> Subject: ...

    def list_subject_ids(self) -> list[str]: ...


class InMemorySubjectStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._subjects: dict[str, Subject] = {}

    def reset(self) -> None:
        with self._lock:
            self._subjects.clear()

    def get_subject(self, subject_id: str) -> Subject | None:
        with self._lock:
            return self._subjects.get(subject_id)

    def get_subjects_batch(self, subject_ids: Iterable[str]) -> dict[str, Subject | None]:
        with self._lock:
            return {subject_id: self._subjects.get(subject_id) for subject_id in set(subject_ids)}

    def upsert_subject(self, subject: Subject) -> Subject:
        with self._lock:
            self._subjects[subject.subject_id] = subject
        return subject

    def list_subject_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._subjects)


class SubjectStoreBase(DeclarativeBase):
    pass


class _BookingRow(SubjectStoreBase):
    __tablename__ = "bookings"

    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    lifecycle_status: Mapped[str] = mapped_column(String(16), nullable=False, default="quoted")
    payment_state: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    final_payment_state: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    ready_time: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    client_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    client_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)


def _to_subject(row: _BookingRow) -> Subject:
    return Subject(
        subject_id=row.subject_id,
        lifecycle_status=row.lifecycle_status,
        payment_state=row.payment_state,
        final_payment_state=row.final_payment_state,
        created_at=_coerce_utc(row.created_at),
        event_date=row.event_date,
        ready_time=row.ready_time,
        is_manual=row.is_manual,
        client_name=row.client_name,
        client_email=row.client_email,
        client_phone=row.client_phone,
    )


class SqlAlchemySubjectStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for SUBJECT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SubjectStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_BookingRow).delete()

    def get_subject(self, subject_id: str) -> Subject | None:
        with self._session() as session:
            row = session.get(_BookingRow, subject_id)
            return _to_subject(row) if row is not None else None

    def get_subjects_batch(self, subject_ids: Iterable[str]) -> dict[str, Subject | None]:
        unique_ids = sorted(set(subject_ids))
        if not unique_ids:
            return {}
        found: dict[str, Subject | None] = {subject_id: None for subject_id in unique_ids}
        with self._session() as session:
            rows = session.execute(select(_BookingRow).where(_BookingRow.subject_id.in_(unique_ids))).scalars()
            for row in rows:
                found[row.subject_id] = _to_subject(row)
        return found

    def upsert_subject(self, subject: Subject) -> Subject:
        with self._session() as session:
            with session.begin():
                row = session.get(_BookingRow, subject.subject_id)
                if row is None:
                    row = _BookingRow(subject_id=subject.subject_id)
                    session.add(row)
                row.lifecycle_status = subject.lifecycle_status
                row.payment_state = subject.payment_state
                row.final_payment_state = subject.final_payment_state
                row.created_at = subject.created_at
                row.event_date = subject.event_date
                row.ready_time = subject.ready_time
                row.is_manual = subject.is_manual
                row.client_name = subject.client_name
                row.client_email = subject.client_email
                row.client_phone = subject.client_phone
        return subject

    def list_subject_ids(self) -> list[str]:
        with self._session() as session:
            return list(session.execute(select(_BookingRow.subject_id).order_by(_BookingRow.subject_id)).scalars())


def create_subject_store(*, backend: str, database_url: str) -> SubjectStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySubjectStore(database_url)
    if normalized == "inmemory":
        return InMemorySubjectStore()
    raise RuntimeError(f"unsupported SUBJECT_STORE_BACKEND: {backend}")
