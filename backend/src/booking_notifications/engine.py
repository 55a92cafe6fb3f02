from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import Settings
from .ledger import LedgerRepository, create_ledger_repository
from .models import BatchRunResponse, ReconcileAllResponse, Subject
from .policy import SchedulingPolicy
from .processor import BatchProcessor
from .scheduler import NotificationScheduler, ReconcileResult
from .subjects import SubjectStore, create_subject_store
from .transport import (
    ChannelRouter,
    HttpEmailTransport,
    HttpWhatsAppTransport,
    NotificationTransport,
    StubTransport,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_transport(settings: Settings) -> NotificationTransport:
    if settings.notifier_sender_type == "http":
        email_url, email_key = settings.transport_credentials("email")
        whatsapp_url, whatsapp_key = settings.transport_credentials("whatsapp")
        return ChannelRouter(
            {
                "email": HttpEmailTransport(
                    base_url=email_url,
                    api_key=email_key,
                    timeout_seconds=settings.notifier_timeout_seconds,
                ),
                "whatsapp": HttpWhatsAppTransport(
                    base_url=whatsapp_url,
                    api_key=whatsapp_key,
                    timeout_seconds=settings.notifier_timeout_seconds,
                ),
            }
        )
    stub = StubTransport(enabled=settings.notifier_enabled)
    return ChannelRouter({"email": stub, "whatsapp": stub})


class NotificationEngine:
    """Wires the stores, policy, scheduler and batch processor together."""

    def __init__(
        self,
        *,
        settings: Settings,
        subjects: SubjectStore,
        ledger: LedgerRepository,
        transport: NotificationTransport,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.settings = settings
        self.subjects = subjects
        self.ledger = ledger
        self.transport = transport
        self.policy = SchedulingPolicy.from_settings(settings)
        self._clock = clock
        self.scheduler = NotificationScheduler(subjects=subjects, ledger=ledger, policy=self.policy)
        self.processor = BatchProcessor(
            subjects=subjects,
            ledger=ledger,
            policy=self.policy,
            transport=transport,
            concurrency=settings.batch_concurrency,
            error_limit=settings.batch_error_limit,
            max_attempts=settings.max_attempts,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> NotificationEngine:
        return cls(
            settings=settings,
            subjects=create_subject_store(backend=settings.subject_store_backend, database_url=settings.database_url),
            ledger=create_ledger_repository(backend=settings.ledger_store_backend, database_url=settings.database_url),
            transport=create_transport(settings),
        )

    def reset(self) -> None:
        self.ledger.reset()
        self.subjects.reset()

    def upsert_subject(self, subject: Subject, *, now: datetime | None = None) -> ReconcileResult:
        self.subjects.upsert_subject(subject)
        return self.scheduler.reconcile_subject(subject, now=now or self._clock())

    def reconcile(self, subject_id: str, *, now: datetime | None = None) -> ReconcileResult:
        return self.scheduler.reconcile(subject_id, now=now or self._clock())

    def reconcile_subject(self, subject: Subject, *, now: datetime | None = None) -> ReconcileResult:
        return self.scheduler.reconcile_subject(subject, now=now or self._clock())

    def reconcile_all(self, *, now: datetime | None = None) -> ReconcileAllResponse:
        return self.scheduler.reconcile_all(now=now or self._clock())

    def run_due_batch(
        self,
        now: datetime | None = None,
        deadline: datetime | None = None,
        *,
        time_budget_seconds: float | None = None,
    ) -> BatchRunResponse:
        reference = now or self._clock()
        if deadline is None:
            budget = self.settings.batch_time_budget_seconds
            if time_budget_seconds is not None and time_budget_seconds > 0:
                budget = time_budget_seconds
            deadline = self._clock() + timedelta(seconds=budget)
        return self.processor.run_due_batch(reference, deadline)
