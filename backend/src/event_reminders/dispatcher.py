from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal
from zoneinfo import ZoneInfo

from .config import Settings
from .directory import EventDirectory, UserDirectory, create_directories
from .dispatch_ledger import DispatchAlreadyExists, DispatchLedger, DispatchRecord, create_dispatch_ledger
from .email_templates import render_event_reminder
from .models import CandidateEvent, ReminderPreference
from .notification_links import DispatchTokens, build_rsvp_url, build_unsubscribe_url, issue_dispatch_tokens
from .notifier import DeliveryResult, NotifierSender, ReminderEmail, create_notifier, mask_email
from .reconciler import reconcile
from .retry import RetryExhaustedError, RetryPolicy
from .scheduling import coerce_utc, compute_target_instant, is_due, resolve_timezone

logger = logging.getLogger(__name__)

PairOutcome = Literal["sent", "skipped", "failed", "unrecorded"]


class ReminderConfigError(RuntimeError):
    """Raised when the dispatcher is missing configuration it needs to send."""


@dataclass
class TickReport:
    run_at: datetime
    evaluated: int = 0
    due: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    # Delivered, but the sent marker could not be persisted.
    unrecorded: int = 0

    def record(self, outcome: PairOutcome) -> None:
        if outcome == "sent":
            self.sent += 1
        elif outcome == "skipped":
            self.skipped += 1
        elif outcome == "failed":
            self.failed += 1
        else:
            self.unrecorded += 1


@dataclass(frozen=True)
class DuePair:
    user: ReminderPreference
    event: CandidateEvent
    target: datetime


def collect_due_pairs(
    users: list[ReminderPreference],
    events: list[CandidateEvent],
    *,
    now: datetime,
    tz: ZoneInfo,
    poll_interval: timedelta,
    grace_period: timedelta,
) -> tuple[int, list[DuePair]]:
    """Return the number of evaluated pairs and the pairs due at ``now``."""
    evaluated = 0
    due: list[DuePair] = []
    for user in users:
        for event in events:
            if user.user_id in event.responded_user_ids:
                continue
            evaluated += 1
            try:
                target = compute_target_instant(event.start_date, event.start_time, user.lead_days, tz)
                due_now = is_due(target, now, poll_interval=poll_interval, grace_period=grace_period)
            except (ValueError, OverflowError) as exc:
                logger.warning(
                    "event_reminder_target_invalid: user_id=%s event_id=%s lead_days=%s error=%s",
                    user.user_id,
                    event.event_id,
                    user.lead_days,
                    exc,
                )
                continue
            if due_now:
                due.append(DuePair(user=user, event=event, target=target))
    return evaluated, due


class ReminderDispatcher:
    """Runs one reminder tick: find due (user, event) pairs and deliver each at most once.

    No state is kept between ticks. The dispatch ledger's unique
    (event_id, user_id) constraint coordinates concurrent ticks, and a failure
    while handling one pair never stops the remaining pairs.
    """

    def __init__(
        self,
        *,
        ledger: DispatchLedger,
        users: UserDirectory,
        events: EventDirectory,
        sender: NotifierSender,
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._ledger = ledger
        self._users = users
        self._events = events
        self._sender = sender
        self._settings = settings
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.mark_sent_max_attempts,
            backoff_seconds=settings.mark_sent_backoff_seconds,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def ledger(self) -> DispatchLedger:
        return self._ledger

    def process_tick(self, now: datetime) -> int:
        return self.run_tick(now).sent

    def run_tick(self, now: datetime) -> TickReport:
        run_at = coerce_utc(now)
        report = TickReport(run_at=run_at)
        try:
            self._require_app_url()
        except ReminderConfigError as exc:
            logger.error("event_reminder_missing_app_url: %s", exc)
            return report

        try:
            users = self._users.list_reminder_preferences()
            events = self._events.list_candidate_events(run_at)
        except Exception:
            logger.exception("event_reminder_candidates_unavailable: tick aborted")
            return report

        tz = resolve_timezone(self._settings.app_timezone)
        evaluated, due_pairs = collect_due_pairs(
            users,
            events,
            now=run_at,
            tz=tz,
            poll_interval=timedelta(seconds=self._settings.poll_interval_seconds),
            grace_period=timedelta(seconds=self._settings.grace_period_seconds),
        )
        report.evaluated = evaluated
        report.due = len(due_pairs)

        for pair in due_pairs:
            try:
                outcome = self._process_pair(pair, now=run_at, tz=tz)
            except Exception as exc:
                logger.error(
                    "event_reminder_queue_failed: user_id=%s event_id=%s error=%s",
                    pair.user.user_id,
                    pair.event.event_id,
                    exc,
                )
                outcome = "failed"
            report.record(outcome)

        if report.sent or report.failed or report.unrecorded:
            logger.info(
                "event_reminder_tick_processed: run_at=%s due=%s sent=%s skipped=%s failed=%s unrecorded=%s",
                run_at.isoformat(),
                report.due,
                report.sent,
                report.skipped,
                report.failed,
                report.unrecorded,
            )
        return report

    def _require_app_url(self) -> str:
        app_url = self._settings.app_url.strip()
        if not app_url:
            raise ReminderConfigError("APP_URL is required for event reminder links")
        return app_url

    def _process_pair(self, pair: DuePair, *, now: datetime, tz: ZoneInfo) -> PairOutcome:
        tokens = issue_dispatch_tokens(now, validity_days=self._settings.notification_token_validity_days)
        record = self._claim(pair, tokens=tokens, now=now)
        if record is None:
            return "skipped"

        delivery = self._deliver(pair, record, tokens=tokens, now=now, tz=tz)
        if not delivery.success:
            logger.warning(
                "event_reminder_delivery_failed: user_id=%s event_id=%s error_code=%s error=%s",
                pair.user.user_id,
                pair.event.event_id,
                delivery.error_code,
                delivery.error_message,
            )
            self._discard(record)
            return "failed"

        try:
            self._retry_policy.call(
                lambda: self._ledger.mark_sent(record.dispatch_id, sent_at=now),
                label=f"mark_sent:{record.dispatch_id}",
            )
        except RetryExhaustedError as exc:
            # The email went out; a later tick may resend it once the record goes stale.
            logger.error(
                "event_reminder_mark_sent_exhausted: dispatch_id=%s user_id=%s event_id=%s error=%s",
                record.dispatch_id,
                pair.user.user_id,
                pair.event.event_id,
                exc.last_error,
            )
            return "unrecorded"
        return "sent"

    def _claim(self, pair: DuePair, *, tokens: DispatchTokens, now: datetime) -> DispatchRecord | None:
        result = self._ledger.create(
            event_id=pair.event.event_id,
            user_id=pair.user.user_id,
            lead_days=pair.user.lead_days,
            tokens=tokens,
            queued_at=now,
        )
        if not isinstance(result, DispatchAlreadyExists):
            return result.record

        decision = reconcile(
            result.existing,
            now=now,
            resend_delay=timedelta(seconds=self._settings.resend_delay_seconds),
        )
        if not decision.should_retry or decision.record is None:
            logger.debug(
                "event_reminder_skipped: user_id=%s event_id=%s reason=%s",
                pair.user.user_id,
                pair.event.event_id,
                decision.action,
            )
            return None

        stale = decision.record
        resumed = self._ledger.reset_queued(
            stale.dispatch_id,
            queued_at=now,
            expected_queued_at=stale.queued_at,
            lead_days=pair.user.lead_days,
            tokens=tokens,
        )
        if resumed is None:
            logger.debug("event_reminder_resume_lost_race: dispatch_id=%s", stale.dispatch_id)
            return None
        logger.info(
            "event_reminder_resuming_stale_dispatch: dispatch_id=%s queued_at=%s",
            stale.dispatch_id,
            stale.queued_at.isoformat(),
        )
        return resumed

    def _deliver(
        self,
        pair: DuePair,
        record: DispatchRecord,
        *,
        tokens: DispatchTokens,
        now: datetime,
        tz: ZoneInfo,
    ) -> DeliveryResult:
        try:
            app_url = self._require_app_url()
            rendered = render_event_reminder(
                app_name=self._settings.app_name,
                event=pair.event,
                lead_days=record.lead_days,
                tz=tz,
                rsvp_url=build_rsvp_url(app_url, tokens.rsvp_token),
                unsubscribe_url=build_unsubscribe_url(app_url, tokens.unsubscribe_token),
                now=now,
            )
            message = ReminderEmail(
                to=pair.user.email,
                subject=rendered.subject,
                text_body=rendered.text_body,
                event_id=pair.event.event_id,
                user_id=pair.user.user_id,
                attachments=rendered.attachments,
            )
            result = self._sender.send_event_reminder(message)
        except Exception as exc:
            logger.error(
                "event_reminder_sender_error: recipient=%s event_id=%s error=%s",
                mask_email(pair.user.email),
                pair.event.event_id,
                exc,
            )
            return DeliveryResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="sender_exception",
                error_message=str(exc),
            )
        if result.success:
            logger.info(
                "event_reminder_email_sent: recipient=%s event_id=%s lead_days=%s",
                mask_email(pair.user.email),
                pair.event.event_id,
                record.lead_days,
            )
        return result

    def _discard(self, record: DispatchRecord) -> None:
        try:
            self._ledger.delete(record.dispatch_id)
        except Exception as exc:
            # The record stays unsent and is retried once it is older than the resend delay.
            logger.warning("event_reminder_discard_failed: dispatch_id=%s error=%s", record.dispatch_id, exc)


def create_dispatcher(settings: Settings) -> ReminderDispatcher:
    users, events = create_directories(
        backend=settings.reminder_store_backend,
        database_url=settings.database_url,
    )
    return ReminderDispatcher(
        ledger=create_dispatch_ledger(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        ),
        users=users,
        events=events,
        sender=create_notifier(settings),
        settings=settings,
    )
