from __future__ import annotations

import hmac
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request

from .config import get_settings
from .engine import NotificationEngine
from .kinds import KIND_SPECS
from .models import (
    BatchRunRequest,
    BatchRunResponse,
    NotificationEventItem,
    NotificationEventListResponse,
    NotificationStatusItem,
    ReconcileAllResponse,
    ReconcileResponse,
    Subject,
    SubjectNotificationsResponse,
)
from .scheduler import ReconcileResult
from .subjects import SubjectNotFoundError

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/notifications", tags=["notifications"])
engine: NotificationEngine = NotificationEngine.from_settings(_settings)


def reset_runtime_state_for_tests() -> None:
    engine.reset()


def _require_cron_secret(request: Request) -> None:
    secret = engine.settings.cron_secret.strip()
    if not secret:
        return
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(401, "cron secret required")
    if not hmac.compare_digest(header.removeprefix("Bearer ").strip(), secret):
        raise HTTPException(401, "invalid cron secret")


def _to_reconcile_response(result: ReconcileResult) -> ReconcileResponse:
    return ReconcileResponse(
        subject_id=result.subject_id,
        inserted_kinds=list(result.inserted_kinds),
        existing_kinds=list(result.existing_kinds),
        required_count=result.required_count,
    )


def _run_due(now_override: datetime | None, time_budget_seconds: float | None) -> BatchRunResponse:
    if now_override is not None and not engine.settings.allow_now_override:
        raise HTTPException(403, "now_override is disabled")
    return engine.run_due_batch(now_override, time_budget_seconds=time_budget_seconds)


@router.post("/subjects", response_model=ReconcileResponse)
def upsert_subject(payload: Subject) -> ReconcileResponse:
    return _to_reconcile_response(engine.upsert_subject(payload))


@router.get("/subjects/{subject_id}/notifications", response_model=SubjectNotificationsResponse)
def get_subject_notifications(subject_id: str) -> SubjectNotificationsResponse:
    subject = engine.subjects.get_subject(subject_id)
    if subject is None:
        raise HTTPException(status_code=404, detail=f"subject not found: {subject_id}")
    engine.reconcile_subject(subject)

    rows = {row.kind: row for row in engine.ledger.list_for_subject(subject_id)}
    items: list[NotificationStatusItem] = []
    for spec in KIND_SPECS:
        row = rows.get(spec.kind)
        if row is None:
            items.append(NotificationStatusItem(kind=spec.kind, channel=spec.channel, scheduled=False))
            continue
        items.append(
            NotificationStatusItem(
                kind=spec.kind,
                channel=spec.channel,
                scheduled=True,
                due_at=row.due_at,
                sent=row.sent,
                sent_at=row.sent_at,
                last_error=row.last_error,
                attempts=row.attempts,
            )
        )
    return SubjectNotificationsResponse(
        subject_id=subject.subject_id,
        lifecycle_status=subject.lifecycle_status,
        payment_state=subject.payment_state,
        event_date=subject.event_date,
        notifications=items,
    )


@router.post("/subjects/{subject_id}/reconcile", response_model=ReconcileResponse)
def reconcile_subject(subject_id: str) -> ReconcileResponse:
    try:
        result = engine.reconcile(subject_id)
    except SubjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"subject not found: {subject_id}") from exc
    return _to_reconcile_response(result)


@router.post("/admin/reconcile-all", response_model=ReconcileAllResponse)
def reconcile_all(request: Request) -> ReconcileAllResponse:
    _require_cron_secret(request)
    return engine.reconcile_all()


@router.get("/run-due", response_model=BatchRunResponse)
def run_due_get(
    request: Request,
    now_override: datetime | None = None,
    time_budget_seconds: float | None = Query(default=None, gt=0, le=300),
) -> BatchRunResponse:
    _require_cron_secret(request)
    override = BatchRunRequest(now_override=now_override).now_override
    return _run_due(override, time_budget_seconds)


@router.post("/run-due", response_model=BatchRunResponse)
def run_due_post(request: Request, payload: BatchRunRequest | None = None) -> BatchRunResponse:
    _require_cron_secret(request)
    request_payload = payload or BatchRunRequest()
    return _run_due(request_payload.now_override, request_payload.time_budget_seconds)


@router.get("/events", response_model=NotificationEventListResponse)
def list_events(
    request: Request,
    subject_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
) -> NotificationEventListResponse:
    _require_cron_secret(request)
    events = engine.ledger.list_events(subject_id=subject_id, limit=limit)
    return NotificationEventListResponse(
        items=[
            NotificationEventItem(
                event_id=event.event_id,
                notification_id=event.notification_id,
                subject_id=event.subject_id,
                kind=event.kind,
                status=event.status,
                detail=event.detail,
                created_at=event.created_at,
            )
            for event in events
        ]
    )
