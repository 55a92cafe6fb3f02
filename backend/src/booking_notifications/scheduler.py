from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .kinds import kind_spec
from .ledger import LedgerRepository
from .models import ReconcileAllItem, ReconcileAllResponse, Subject
from .policy import SchedulingPolicy
from .subjects import SubjectNotFoundError, SubjectStore

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconcileResult:
    subject_id: str
    inserted_kinds: tuple[str, ...]
    existing_kinds: tuple[str, ...]
    required_count: int


class NotificationScheduler:
    """Brings the ledger rows for a booking up to what the policy requires.

    Reconciling only ever inserts. Rows that already exist are left alone,
    sent or not, so a due time computed from an older event date is kept.
    """

    def __init__(self, *, subjects: SubjectStore, ledger: LedgerRepository, policy: SchedulingPolicy) -> None:
        self._subjects = subjects
        self._ledger = ledger
        self._policy = policy

    def reconcile(self, subject_id: str, *, now: datetime | None = None) -> ReconcileResult:
        subject = self._subjects.get_subject(subject_id)
        if subject is None:
            raise SubjectNotFoundError(subject_id)
        return self.reconcile_subject(subject, now=now)

    def reconcile_subject(self, subject: Subject, *, now: datetime | None = None) -> ReconcileResult:
        reference = now or _now_utc()
        required = self._policy.required_notifications(subject, now=reference)
        present = {row.kind for row in self._ledger.list_for_subject(subject.subject_id)}

        inserted: list[str] = []
        existing: list[str] = []
        for kind, due_at in required.items():
            if kind in present:
                existing.append(kind)
                continue
            created = self._ledger.insert_if_absent(
                subject_id=subject.subject_id,
                kind=kind,
                channel=kind_spec(kind).channel,
                due_at=due_at,
            )
            if created:
                inserted.append(kind)
            else:
                existing.append(kind)

        if inserted:
            logger.info("scheduled notifications for %s: %s", subject.subject_id, ", ".join(inserted))
        return ReconcileResult(
            subject_id=subject.subject_id,
            inserted_kinds=tuple(inserted),
            existing_kinds=tuple(existing),
            required_count=len(required),
        )

    def reconcile_all(self, *, now: datetime | None = None) -> ReconcileAllResponse:
        reference = now or _now_utc()
        items: list[ReconcileAllItem] = []
        for subject_id in self._subjects.list_subject_ids():
            try:
                result = self.reconcile(subject_id, now=reference)
            except Exception as exc:  # keep backfilling the remaining bookings
                logger.exception("reconcile failed for %s", subject_id)
                items.append(ReconcileAllItem(subject_id=subject_id, error=str(exc)))
                continue
            items.append(ReconcileAllItem(subject_id=subject_id, inserted_count=len(result.inserted_kinds)))

        return ReconcileAllResponse(
            subject_count=len(items),
            inserted_count=sum(item.inserted_count for item in items),
            failed_count=sum(1 for item in items if item.error is not None),
            items=items,
        )
