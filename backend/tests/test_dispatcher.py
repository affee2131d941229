from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from event_reminders.config import Settings
from event_reminders.directory import CandidateLoadError, InMemoryEventDirectory, InMemoryUserDirectory
from event_reminders.dispatch_ledger import DispatchCreated, InMemoryDispatchLedger
from event_reminders.dispatcher import ReminderDispatcher
from event_reminders.models import CandidateEvent, ReminderPreference
from event_reminders.notification_links import issue_dispatch_tokens
from event_reminders.notifier import DeliveryResult, ReminderEmail, StubNotifierSender
from event_reminders.retry import RetryPolicy

# 2026-02-08 18:00 Europe/Berlin (UTC+1) with a 7 day lead is due at 2026-02-01T17:00:00Z.
TARGET = datetime(2026, 2, 1, 17, 0, tzinfo=timezone.utc)
DUE_NOW = datetime(2026, 2, 1, 16, 56, tzinfo=timezone.utc)


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "app_url": "https://verein.example.org/",
        "app_timezone": "Europe/Berlin",
        "poll_interval_seconds": 3600,
        "grace_period_seconds": 900,
        "resend_delay_seconds": 24 * 60 * 60,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def _user(user_id: str = "user-1", *, email: str = "member@example.org", lead_days: int = 7) -> ReminderPreference:
    return ReminderPreference(user_id=user_id, email=email, lead_days=lead_days)


def _event(event_id: str = "event-1", *, start_date: date = date(2026, 2, 8), **extra: object) -> CandidateEvent:
    return CandidateEvent(
        event_id=event_id,
        start_date=start_date,
        start_time_of_day="18:00",
        end_time_of_day="20:00",
        location="Schießstand Neubrandenburg",
        **extra,  # type: ignore[arg-type]
    )


def _dispatcher(
    *,
    users: list[ReminderPreference] | None = None,
    events: list[CandidateEvent] | None = None,
    ledger: InMemoryDispatchLedger | None = None,
    sender: object | None = None,
    settings: Settings | None = None,
    retry_policy: RetryPolicy | None = None,
) -> tuple[ReminderDispatcher, InMemoryDispatchLedger, StubNotifierSender]:
    active_ledger = ledger or InMemoryDispatchLedger()
    active_sender = sender or StubNotifierSender(enabled=True)
    dispatcher = ReminderDispatcher(
        ledger=active_ledger,
        users=InMemoryUserDirectory(users if users is not None else [_user()]),
        events=InMemoryEventDirectory(events if events is not None else [_event()]),
        sender=active_sender,  # type: ignore[arg-type]
        settings=settings or _settings(),
        retry_policy=retry_policy,
    )
    return dispatcher, active_ledger, active_sender  # type: ignore[return-value]


class _FailingMarkSentLedger(InMemoryDispatchLedger):
    def __init__(self, failing_event_ids: set[str]) -> None:
        super().__init__()
        self._failing_event_ids = failing_event_ids
        self._failing_dispatch_ids: set[str] = set()
        self.mark_sent_calls = 0

    def create(self, **kwargs):  # type: ignore[override]
        result = super().create(**kwargs)
        if isinstance(result, DispatchCreated) and result.record.event_id in self._failing_event_ids:
            self._failing_dispatch_ids.add(result.record.dispatch_id)
        return result

    def mark_sent(self, dispatch_id: str, *, sent_at: datetime):  # type: ignore[override]
        self.mark_sent_calls += 1
        if dispatch_id in self._failing_dispatch_ids:
            raise RuntimeError("database is locked")
        return super().mark_sent(dispatch_id, sent_at=sent_at)


class _ExplodingSender:
    def send_event_reminder(self, message: ReminderEmail) -> DeliveryResult:
        raise RuntimeError("mail transport misconfigured")


class _FailingUserDirectory:
    def list_reminder_preferences(self) -> list[ReminderPreference]:
        raise CandidateLoadError("could not load users: connection refused")


def test_due_pair_is_delivered_and_recorded() -> None:
    dispatcher, ledger, sender = _dispatcher()

    assert dispatcher.process_tick(DUE_NOW) == 1

    record = ledger.find("event-1", "user-1")
    assert record is not None
    assert record.sent_at == DUE_NOW
    assert record.queued_at == DUE_NOW
    assert record.lead_days == 7
    assert len(sender.sent) == 1
    message = sender.sent[0]
    assert message.to == "member@example.org"
    assert "https://verein.example.org/anmeldung/" in message.text_body
    assert "https://verein.example.org/benachrichtigungen/abmelden/" in message.text_body
    assert message.attachments[0].content_type.startswith("text/calendar")


def test_pair_outside_window_is_not_due() -> None:
    dispatcher, ledger, sender = _dispatcher()

    assert dispatcher.process_tick(datetime(2026, 2, 1, 15, 0, tzinfo=timezone.utc)) == 0
    assert ledger.find("event-1", "user-1") is None
    assert sender.sent == []


def test_reminder_is_not_backfilled_after_target() -> None:
    dispatcher, _, sender = _dispatcher()

    assert dispatcher.process_tick(TARGET + timedelta(seconds=1)) == 0
    assert sender.sent == []


def test_already_sent_record_skips_delivery() -> None:
    ledger = InMemoryDispatchLedger()
    queued_at = DUE_NOW - timedelta(minutes=30)
    created = ledger.create(
        event_id="event-1",
        user_id="user-1",
        lead_days=7,
        tokens=issue_dispatch_tokens(queued_at),
        queued_at=queued_at,
    )
    assert isinstance(created, DispatchCreated)
    ledger.mark_sent(created.record.dispatch_id, sent_at=queued_at)
    dispatcher, _, sender = _dispatcher(ledger=ledger)

    report = dispatcher.run_tick(DUE_NOW)

    assert report.sent == 0
    assert report.skipped == 1
    assert sender.sent == []


def test_stale_unsent_record_is_resumed() -> None:
    ledger = InMemoryDispatchLedger()
    stale_queued_at = DUE_NOW - timedelta(days=12)
    created = ledger.create(
        event_id="event-1",
        user_id="user-1",
        lead_days=3,
        tokens=issue_dispatch_tokens(stale_queued_at),
        queued_at=stale_queued_at,
    )
    assert isinstance(created, DispatchCreated)
    dispatcher, _, sender = _dispatcher(ledger=ledger)

    assert dispatcher.process_tick(DUE_NOW) == 1

    record = ledger.find("event-1", "user-1")
    assert record is not None
    assert record.dispatch_id == created.record.dispatch_id
    assert record.queued_at == DUE_NOW
    assert record.sent_at == DUE_NOW
    assert record.lead_days == 7
    assert record.rsvp_token_hash != created.record.rsvp_token_hash
    assert len(sender.sent) == 1


def test_young_unsent_record_is_left_to_its_owner() -> None:
    ledger = InMemoryDispatchLedger()
    queued_at = DUE_NOW - timedelta(minutes=5)
    ledger.create(
        event_id="event-1",
        user_id="user-1",
        lead_days=7,
        tokens=issue_dispatch_tokens(queued_at),
        queued_at=queued_at,
    )
    dispatcher, _, sender = _dispatcher(ledger=ledger)

    assert dispatcher.process_tick(DUE_NOW) == 0
    record = ledger.find("event-1", "user-1")
    assert record is not None
    assert record.queued_at == queued_at
    assert record.sent_at is None
    assert sender.sent == []


def test_mark_sent_failure_on_one_pair_does_not_count_it() -> None:
    ledger = _FailingMarkSentLedger({"event-1"})
    events = [_event("event-1"), _event("event-2")]
    dispatcher, _, sender = _dispatcher(ledger=ledger, events=events)

    report = dispatcher.run_tick(DUE_NOW)

    assert report.sent == 1
    assert report.unrecorded == 1
    assert len(sender.sent) == 2
    assert ledger.mark_sent_calls == 3 + 1
    unrecorded = ledger.find("event-1", "user-1")
    assert unrecorded is not None
    assert unrecorded.sent_at is None


def test_mark_sent_retry_count_follows_policy() -> None:
    ledger = _FailingMarkSentLedger({"event-1"})
    dispatcher, _, _ = _dispatcher(ledger=ledger, retry_policy=RetryPolicy(max_attempts=5))

    assert dispatcher.process_tick(DUE_NOW) == 0
    assert ledger.mark_sent_calls == 5


def test_second_tick_at_same_instant_does_not_resend() -> None:
    dispatcher, _, sender = _dispatcher()

    assert dispatcher.process_tick(DUE_NOW) == 1
    assert dispatcher.process_tick(DUE_NOW) == 0
    assert dispatcher.process_tick(DUE_NOW + timedelta(minutes=2)) == 0
    assert len(sender.sent) == 1


def test_failed_delivery_leaves_no_record_behind() -> None:
    dispatcher, ledger, sender = _dispatcher(users=[_user(email="fail@example.org")])

    report = dispatcher.run_tick(DUE_NOW)

    assert report.sent == 0
    assert report.failed == 1
    assert ledger.find("event-1", "user-1") is None
    assert sender.sent == []


def test_failed_delivery_is_retried_on_a_later_due_tick() -> None:
    users = InMemoryUserDirectory([_user(email="fail@example.org")])
    ledger = InMemoryDispatchLedger()
    dispatcher = ReminderDispatcher(
        ledger=ledger,
        users=users,
        events=InMemoryEventDirectory([_event()]),
        sender=StubNotifierSender(enabled=True),
        settings=_settings(),
    )
    assert dispatcher.process_tick(DUE_NOW - timedelta(minutes=30)) == 0

    users.upsert(_user(email="member@example.org"))

    assert dispatcher.process_tick(DUE_NOW) == 1


def test_sender_exception_is_isolated_to_its_pair() -> None:
    dispatcher, ledger, _ = _dispatcher(sender=_ExplodingSender())

    report = dispatcher.run_tick(DUE_NOW)

    assert report.failed == 1
    assert report.sent == 0
    assert ledger.find("event-1", "user-1") is None


def test_one_failing_pair_does_not_stop_the_others() -> None:
    users = [_user("user-1", email="fail@example.org"), _user("user-2", email="second@example.org")]
    dispatcher, ledger, sender = _dispatcher(users=users)

    report = dispatcher.run_tick(DUE_NOW)

    assert report.due == 2
    assert report.failed == 1
    assert report.sent == 1
    assert [message.to for message in sender.sent] == ["second@example.org"]
    assert ledger.find("event-1", "user-2") is not None


def test_candidate_load_failure_aborts_tick() -> None:
    sender = StubNotifierSender(enabled=True)
    dispatcher = ReminderDispatcher(
        ledger=InMemoryDispatchLedger(),
        users=_FailingUserDirectory(),
        events=InMemoryEventDirectory([_event()]),
        sender=sender,
        settings=_settings(),
    )

    assert dispatcher.process_tick(DUE_NOW) == 0
    assert sender.sent == []


def test_missing_app_url_sends_nothing() -> None:
    dispatcher, ledger, sender = _dispatcher(settings=_settings(app_url=""))

    assert dispatcher.process_tick(DUE_NOW) == 0
    assert ledger.find("event-1", "user-1") is None
    assert sender.sent == []


def test_user_who_already_responded_is_not_reminded() -> None:
    dispatcher, _, sender = _dispatcher(events=[_event(responded_user_ids=frozenset({"user-1"}))])

    report = dispatcher.run_tick(DUE_NOW)

    assert report.evaluated == 0
    assert report.sent == 0
    assert sender.sent == []


def test_naive_now_is_treated_as_utc() -> None:
    dispatcher, _, _ = _dispatcher()

    assert dispatcher.process_tick(DUE_NOW.replace(tzinfo=None)) == 1


def test_timezone_is_read_from_settings_at_evaluation_time() -> None:
    # Berlin window is (15:45Z, 17:00Z]; in UTC the same wall-clock start gives (16:45Z, 18:00Z].
    before_utc_window = datetime(2026, 2, 1, 15, 50, tzinfo=timezone.utc)
    berlin, _, _ = _dispatcher()
    utc, _, _ = _dispatcher(settings=_settings(app_timezone="UTC"))

    assert berlin.process_tick(before_utc_window) == 1
    assert utc.process_tick(before_utc_window) == 0
    assert utc.process_tick(datetime(2026, 2, 1, 17, 56, tzinfo=timezone.utc)) == 1


def test_unrepresentable_target_skips_only_that_pair(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher, ledger, sender = _dispatcher(
        users=[
            _user("user-far", email="far@example.org", lead_days=1_000_000),
            _user("user-1"),
        ]
    )

    report = dispatcher.run_tick(DUE_NOW)

    assert report.evaluated == 2
    assert report.due == 1
    assert report.sent == 1
    assert [message.user_id for message in sender.sent] == ["user-1"]
    assert ledger.find("event-1", "user-far") is None
    assert "event_reminder_target_invalid" in caplog.text


def test_concurrent_ticks_send_at_most_once() -> None:
    ledger = InMemoryDispatchLedger()
    sender = StubNotifierSender(enabled=True)
    barrier = threading.Barrier(6)
    results: list[int] = []
    results_lock = threading.Lock()

    def _run() -> None:
        dispatcher, _, _ = _dispatcher(ledger=ledger, sender=sender)
        barrier.wait()
        sent = dispatcher.process_tick(DUE_NOW)
        with results_lock:
            results.append(sent)

    threads = [threading.Thread(target=_run) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sum(results) == 1
    assert len(sender.sent) == 1
