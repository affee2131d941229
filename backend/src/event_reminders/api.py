from __future__ import annotations

import hmac
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, Request

from .config import Settings, get_settings
from .dispatcher import ReminderDispatcher, create_dispatcher
from .models import (
    DispatchItem,
    DispatchListResponse,
    ReminderTickRequest,
    ReminderTickResponse,
)
from .scheduling import coerce_utc

settings: Settings = get_settings()
router = APIRouter(prefix=f"{settings.api_prefix}/reminders", tags=["reminders"])
health_router = APIRouter(tags=["health"])
dispatcher: ReminderDispatcher = create_dispatcher(settings)


def _require_trigger_secret(request: Request) -> None:
    expected = settings.reminder_trigger_secret.strip()
    if not expected:
        raise HTTPException(403, "reminder trigger is not configured")
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(401, "bearer token required")
    token = header.removeprefix("Bearer ").strip()
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid trigger token")


@health_router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/tick", response_model=ReminderTickResponse)
def run_reminder_tick(request: Request, payload: ReminderTickRequest | None = None) -> ReminderTickResponse:
    _require_trigger_secret(request)
    request_payload = payload or ReminderTickRequest()
    if request_payload.now_override is not None and not settings.reminder_allow_now_override:
        raise HTTPException(403, "now_override is disabled; set REMINDER_ALLOW_NOW_OVERRIDE=true")
    now = request_payload.now_override or datetime.now(timezone.utc)
    report = dispatcher.run_tick(coerce_utc(now))
    return ReminderTickResponse(
        run_at=report.run_at,
        evaluated_count=report.evaluated,
        due_count=report.due,
        sent_count=report.sent,
        skipped_count=report.skipped,
        failed_count=report.failed,
        unrecorded_count=report.unrecorded,
    )


@router.get("/dispatches", response_model=DispatchListResponse)
def list_dispatches(request: Request, event_id: str = Query(min_length=1)) -> DispatchListResponse:
    _require_trigger_secret(request)
    records = dispatcher.ledger.list_for_event(event_id)
    return DispatchListResponse(
        event_id=event_id,
        items=[
            DispatchItem(
                dispatch_id=record.dispatch_id,
                event_id=record.event_id,
                user_id=record.user_id,
                lead_days=record.lead_days,
                queued_at=record.queued_at,
                sent_at=record.sent_at,
            )
            for record in records
        ],
    )
