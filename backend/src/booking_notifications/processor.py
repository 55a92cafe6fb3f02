"""Drains due ledger rows through the transport.

Rows are dispatched in fixed-size groups on a thread pool. The deadline is
checked before each group starts; a group that is already in flight always
runs to completion. Every row resolved in a run (sent or hard-skipped) is
committed with a single batched update, falling back to per-row updates when
the batch fails.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Literal, Sequence

from .ledger import LedgerCommitError, LedgerRepository, ScheduledNotificationRecord, SentResolution
from .models import BatchRunResponse, Subject
from .policy import SKIP_SUBJECT_NOT_FOUND, SchedulingPolicy
from .subjects import SubjectStore
from .transport import NotificationTransport, TransportResult

logger = logging.getLogger(__name__)

RowOutcomeStatus = Literal["sent", "skipped", "failed"]

RETRY_LIMIT_PREFIX = "retry limit reached"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _RowOutcome:
    status: RowOutcomeStatus
    resolution: SentResolution | None = None
    error: str | None = None


@dataclass
class BatchOutcome:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class BatchProcessor:
    def __init__(
        self,
        *,
        subjects: SubjectStore,
        ledger: LedgerRepository,
        policy: SchedulingPolicy,
        transport: NotificationTransport,
        concurrency: int = 5,
        error_limit: int = 10,
        max_attempts: int = 0,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._subjects = subjects
        self._ledger = ledger
        self._policy = policy
        self._transport = transport
        self._concurrency = max(1, concurrency)
        self._error_limit = max(0, error_limit)
        self._max_attempts = max(0, max_attempts)
        self._clock = clock

    def process_batch(self, rows: Sequence[ScheduledNotificationRecord], *, deadline: datetime) -> BatchOutcome:
        outcome = BatchOutcome()
        if not rows:
            return outcome

        subjects = self._subjects.get_subjects_batch({row.subject_id for row in rows})
        resolutions: list[SentResolution] = []

        with ThreadPoolExecutor(max_workers=min(self._concurrency, len(rows))) as pool:
            for start in range(0, len(rows), self._concurrency):
                if self._clock() >= deadline:
                    logger.info("batch deadline reached; %d due notifications left for the next run", len(rows) - start)
                    break
                group = rows[start : start + self._concurrency]
                results = list(pool.map(lambda row: self._handle_row(row, subjects.get(row.subject_id)), group))
                for row_outcome in results:
                    self._tally(outcome, row_outcome)
                    if row_outcome.resolution is not None:
                        resolutions.append(row_outcome.resolution)

        outcome.errors.extend(self._commit(resolutions))
        return outcome

    def run_due_batch(self, now: datetime, deadline: datetime) -> BatchRunResponse:
        started = time.monotonic()
        rows = self._ledger.list_due(now)
        logger.info("notification batch started at %s with %d due", now.isoformat(), len(rows))

        outcome = self.process_batch(rows, deadline=deadline)
        remaining = self._ledger.count_due(now)
        execution_time_ms = int((time.monotonic() - started) * 1000)

        if not rows:
            message = "No notifications due"
        else:
            message = (
                f"Processed {outcome.processed}, skipped {outcome.skipped}, "
                f"failed {outcome.failed}; {remaining} still due"
            )
        logger.info(
            "notification batch finished: processed=%d skipped=%d failed=%d remaining=%d in %dms",
            outcome.processed,
            outcome.skipped,
            outcome.failed,
            remaining,
            execution_time_ms,
        )
        return BatchRunResponse(
            message=message,
            run_at=now,
            total_due=len(rows),
            processed=outcome.processed,
            skipped=outcome.skipped,
            failed=outcome.failed,
            remaining=remaining,
            errors=outcome.errors[: self._error_limit],
            execution_time_ms=execution_time_ms,
        )

    def _tally(self, outcome: BatchOutcome, row_outcome: _RowOutcome) -> None:
        if row_outcome.status == "sent":
            outcome.processed += 1
        elif row_outcome.status == "skipped":
            outcome.skipped += 1
        else:
            outcome.failed += 1
        if row_outcome.error is not None:
            outcome.errors.append(row_outcome.error)

    def _handle_row(self, row: ScheduledNotificationRecord, subject: Subject | None) -> _RowOutcome:
        try:
            return self._classify_and_dispatch(row, subject)
        except Exception as exc:  # one row never aborts the batch
            logger.exception("notification %s (%s) failed unexpectedly", row.notification_id, row.kind)
            return _RowOutcome(status="failed", error=f"{row.kind} for {row.subject_id}: {exc}")

    def _classify_and_dispatch(self, row: ScheduledNotificationRecord, subject: Subject | None) -> _RowOutcome:
        if subject is None:
            return self._skip(row, SKIP_SUBJECT_NOT_FOUND)
        reason = self._policy.send_skip_reason(row.kind, subject)
        if reason is not None:
            return self._skip(row, reason)

        self._record_event(row, "processing", None)
        result = self._send(row, subject)
        if result.status == "sent":
            self._record_event(row, "sent", result.provider_message_id)
            return _RowOutcome(status="sent", resolution=SentResolution(row.notification_id, None))

        error = result.error
        attempts = self._ledger.record_failure(row.notification_id, error)
        logger.warning(
            "sending %s for %s failed (attempt %d): %s", row.kind, row.subject_id, attempts, error
        )
        self._record_event(row, "failed", error)
        resolution = None
        if self._max_attempts and attempts >= self._max_attempts:
            resolution = SentResolution(row.notification_id, f"{RETRY_LIMIT_PREFIX}: {error}")
        return _RowOutcome(status="failed", resolution=resolution, error=f"{row.kind} for {row.subject_id}: {error}")

    def _skip(self, row: ScheduledNotificationRecord, reason: str) -> _RowOutcome:
        logger.info("skipping %s for %s: %s", row.kind, row.subject_id, reason)
        self._record_event(row, "skipped", reason)
        return _RowOutcome(status="skipped", resolution=SentResolution(row.notification_id, reason))

    def _send(self, row: ScheduledNotificationRecord, subject: Subject) -> TransportResult:
        try:
            return self._transport.send(row.kind, subject)
        except Exception as exc:  # a raising transport counts as a failed delivery
            logger.warning("transport raised for %s (%s): %s", row.notification_id, row.kind, exc)
            return TransportResult(
                status="failed",
                attempted_at=self._clock(),
                error_code="transport_error",
                error_message=str(exc),
            )

    def _record_event(self, row: ScheduledNotificationRecord, status: str, detail: str | None) -> None:
        try:
            self._ledger.record_event(
                notification_id=row.notification_id,
                subject_id=row.subject_id,
                kind=row.kind,
                status=status,
                detail=detail,
            )
        except Exception as exc:
            logger.warning("could not record %s event for notification %s: %s", status, row.notification_id, exc)

    def _commit(self, resolutions: list[SentResolution]) -> list[str]:
        if not resolutions:
            return []
        sent_at = self._clock()
        try:
            self._ledger.mark_sent_batch(resolutions, sent_at=sent_at)
            return []
        except LedgerCommitError:
            logger.exception("batched mark-sent failed for %d notifications; retrying per row", len(resolutions))

        errors: list[str] = []
        for resolution in resolutions:
            try:
                if resolution.last_error is None:
                    self._ledger.mark_sent(resolution.notification_id, sent_at=sent_at)
                else:
                    self._ledger.mark_sent_with_error(resolution.notification_id, resolution.last_error, sent_at=sent_at)
            except Exception as exc:
                logger.error("could not mark notification %s as sent: %s", resolution.notification_id, exc)
                errors.append(f"notification {resolution.notification_id}: mark sent failed: {exc}")
        return errors
