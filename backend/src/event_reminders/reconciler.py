"""Decide what to do when a dispatch record already exists for a pair.

The ledger's unique (event_id, user_id) constraint is the only real
concurrency control. Everything here is the time-based policy layered on top
of it: a sent record is final, a young unsent record belongs to another
attempt, and an unsent record older than the resend delay is treated as
abandoned and may be retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from .dispatch_ledger import DispatchRecord
from .scheduling import coerce_utc

ReconcileAction = Literal["skip_sent", "skip_in_flight", "skip_missing", "retry"]


@dataclass(frozen=True)
class ReconcileDecision:
    action: ReconcileAction
    record: DispatchRecord | None = None

    @property
    def should_retry(self) -> bool:
        return self.action == "retry"


def reconcile(existing: DispatchRecord | None, *, now: datetime, resend_delay: timedelta) -> ReconcileDecision:
    if existing is None:
        return ReconcileDecision("skip_missing")
    if existing.sent_at is not None:
        return ReconcileDecision("skip_sent", existing)
    age = coerce_utc(now) - coerce_utc(existing.queued_at)
    if age < resend_delay:
        return ReconcileDecision("skip_in_flight", existing)
    return ReconcileDecision("retry", existing)
