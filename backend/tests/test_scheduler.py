from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from booking_notifications.ledger import InMemoryLedgerRepository, LedgerRepository, SqlAlchemyLedgerRepository
from booking_notifications.models import Subject
from booking_notifications.policy import SchedulingPolicy
from booking_notifications.scheduler import NotificationScheduler
from booking_notifications.subjects import InMemorySubjectStore, SubjectNotFoundError

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _subject(**overrides: object) -> Subject:
    values: dict[str, object] = {
        "subject_id": "booking-001",
        "created_at": T0,
        "client_email": "bride@example.com",
    }
    values.update(overrides)
    return Subject(**values)  # type: ignore[arg-type]


def _build() -> tuple[NotificationScheduler, InMemorySubjectStore, InMemoryLedgerRepository]:
    subjects = InMemorySubjectStore()
    ledger = InMemoryLedgerRepository()
    policy = SchedulingPolicy(zone=ZoneInfo("America/Toronto"))
    return NotificationScheduler(subjects=subjects, ledger=ledger, policy=policy), subjects, ledger


def test_reconcile_is_idempotent() -> None:
    scheduler, subjects, ledger = _build()
    subjects.upsert_subject(_subject(event_date=date(2026, 4, 10)))

    first = scheduler.reconcile("booking-001", now=T0)
    rows_after_first = ledger.list_for_subject("booking-001")
    second = scheduler.reconcile("booking-001", now=T0)
    third = scheduler.reconcile("booking-001", now=T0 + timedelta(minutes=5))

    assert len(first.inserted_kinds) == first.required_count == 8
    assert second.inserted_kinds == ()
    assert third.inserted_kinds == ()
    assert sorted(second.existing_kinds) == sorted(first.inserted_kinds)
    assert ledger.list_for_subject("booking-001") == rows_after_first


def test_reconcile_missing_subject_raises() -> None:
    scheduler, _, _ = _build()

    with pytest.raises(SubjectNotFoundError):
        scheduler.reconcile("missing", now=T0)


def test_reconcile_never_redates_existing_rows() -> None:
    scheduler, subjects, ledger = _build()
    subjects.upsert_subject(
        _subject(lifecycle_status="confirmed", payment_state="deposit-paid", event_date=date(2026, 4, 10))
    )
    scheduler.reconcile("booking-001", now=T0)
    before = {row.kind: row.due_at for row in ledger.list_for_subject("booking-001")}

    subjects.upsert_subject(
        _subject(lifecycle_status="confirmed", payment_state="deposit-paid", event_date=date(2026, 5, 20))
    )
    result = scheduler.reconcile("booking-001", now=T0)

    after = {row.kind: row.due_at for row in ledger.list_for_subject("booking-001")}
    assert result.inserted_kinds == ()
    assert after == before


def test_reconcile_does_not_touch_sent_rows() -> None:
    scheduler, subjects, ledger = _build()
    subjects.upsert_subject(_subject())
    scheduler.reconcile("booking-001", now=T0)
    row = next(row for row in ledger.list_for_subject("booking-001") if row.kind == "followup-3h")
    ledger.mark_sent(row.notification_id, sent_at=T0 + timedelta(hours=3))

    scheduler.reconcile("booking-001", now=T0 + timedelta(hours=4))

    refreshed = ledger.get(row.notification_id)
    assert refreshed is not None
    assert refreshed.sent is True
    assert len(ledger.list_for_subject("booking-001")) == 6


def test_reconcile_scenario_adds_event_kinds_without_touching_followups() -> None:
    scheduler, subjects, ledger = _build()
    subjects.upsert_subject(_subject())

    first = scheduler.reconcile("booking-001", now=T0)
    assert set(first.inserted_kinds) == {
        "followup-3h",
        "followup-6h",
        "followup-24h",
        "followup-3d",
        "followup-6d",
        "followup-30d",
    }
    followups_before = {row.kind: row for row in ledger.list_for_subject("booking-001")}

    event_day = (T0 + timedelta(days=10)).date()
    subjects.upsert_subject(
        _subject(lifecycle_status="confirmed", payment_state="deposit-paid", event_date=event_day)
    )
    second = scheduler.reconcile("booking-001", now=T0 + timedelta(hours=1))

    assert {"event-reminder-24h", "appointment-day-reminder", "post-appointment-followup"} <= set(second.inserted_kinds)
    rows = {row.kind: row for row in ledger.list_for_subject("booking-001")}
    for kind, row in followups_before.items():
        assert rows[kind] == row


def test_reconcile_all_collects_per_subject_results() -> None:
    scheduler, subjects, _ = _build()
    subjects.upsert_subject(_subject(subject_id="booking-a"))
    subjects.upsert_subject(_subject(subject_id="booking-b", lifecycle_status="cancelled"))

    response = scheduler.reconcile_all(now=T0)

    assert response.subject_count == 2
    assert response.failed_count == 0
    counts = {item.subject_id: item.inserted_count for item in response.items}
    assert counts == {"booking-a": 6, "booking-b": 0}
    assert response.inserted_count == 6


def test_reconcile_all_keeps_going_after_a_store_error() -> None:
    scheduler, subjects, ledger = _build()
    subjects.upsert_subject(_subject(subject_id="booking-a"))
    subjects.upsert_subject(_subject(subject_id="booking-b"))

    original_insert = ledger.insert_if_absent

    def _flaky_insert(**kwargs: object) -> bool:
        if kwargs["subject_id"] == "booking-a":
            raise RuntimeError("ledger unavailable")
        return original_insert(**kwargs)  # type: ignore[arg-type]

    ledger.insert_if_absent = _flaky_insert  # type: ignore[method-assign]

    response = scheduler.reconcile_all(now=T0)

    assert response.failed_count == 1
    items = {item.subject_id: item for item in response.items}
    assert items["booking-a"].error == "ledger unavailable"
    assert items["booking-b"].inserted_count == 6


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_concurrent_reconciles_insert_each_kind_once(backend: str, tmp_path: Path) -> None:
    ledger: LedgerRepository
    if backend == "sqlite":
        ledger = SqlAlchemyLedgerRepository(f"sqlite:///{tmp_path / 'ledger.db'}")
    else:
        ledger = InMemoryLedgerRepository()
    subjects = InMemorySubjectStore()
    subjects.upsert_subject(_subject(subject_id="S"))
    scheduler = NotificationScheduler(
        subjects=subjects,
        ledger=ledger,
        policy=SchedulingPolicy(zone=ZoneInfo("America/Toronto")),
    )

    barrier = threading.Barrier(8)
    errors: list[BaseException] = []
    inserted: list[str] = []
    lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        try:
            result = scheduler.reconcile("S", now=T0)
        except Exception as exc:
            with lock:
                errors.append(exc)
            return
        with lock:
            inserted.extend(result.inserted_kinds)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    rows = ledger.list_for_subject("S")
    assert len(rows) == 6
    assert len({row.kind for row in rows}) == 6
    assert sorted(inserted) == sorted(row.kind for row in rows)
