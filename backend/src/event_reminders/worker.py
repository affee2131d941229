from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Lock

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import get_settings
from .dispatcher import ReminderDispatcher, TickReport, create_dispatcher
from .scheduling import coerce_utc

logger = logging.getLogger(__name__)

TICK_JOB_ID = "event-reminder-tick"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReminderWorker:
    """Runs the dispatcher every ``poll_interval_seconds`` through APScheduler.

    Ticks never overlap inside one process; a tick that would start while
    another is still running is dropped. Separate processes may still overlap,
    which the dispatch ledger tolerates.
    """

    def __init__(
        self,
        dispatcher: ReminderDispatcher,
        *,
        poll_interval_seconds: int,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if poll_interval_seconds < 1:
            raise ValueError("poll_interval_seconds must be >= 1")
        self._dispatcher = dispatcher
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._tick_lock = Lock()
        self._state_lock = Lock()
        self._scheduler: BaseScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_tick_once(self, now: datetime | None = None) -> TickReport | None:
        if not self._tick_lock.acquire(blocking=False):
            logger.info("event_reminder_tick_skipped: previous tick still running")
            return None
        try:
            report = self._dispatcher.run_tick(coerce_utc(now) if now is not None else self._clock())
            if report.sent > 0:
                logger.info("event_reminder_worker_processed: sent=%s", report.sent)
            return report
        except Exception:
            logger.exception("event_reminder_worker_error: tick failed")
            return None
        finally:
            self._tick_lock.release()

    def schedule(self, scheduler: BaseScheduler) -> None:
        """Register the tick job on ``scheduler``; the first tick runs immediately."""
        scheduler.add_job(
            self.run_tick_once,
            IntervalTrigger(seconds=self._poll_interval_seconds),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=_now_utc(),
        )

    def start(self) -> None:
        with self._state_lock:
            if self.running:
                return
            scheduler = BackgroundScheduler(timezone="UTC")
            self.schedule(scheduler)
            scheduler.start()
            self._scheduler = scheduler
        logger.info("event_reminder_worker_started: poll_interval_seconds=%s", self._poll_interval_seconds)

    def stop(self, wait: bool = True) -> None:
        with self._state_lock:
            scheduler = self._scheduler
            self._scheduler = None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=wait)
            logger.info("event_reminder_worker_stopped")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send due event reminder emails.")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Evaluate the tick at this ISO-8601 instant instead of the current time (implies --once).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = parse_args(argv)
    settings = get_settings()
    worker = ReminderWorker(create_dispatcher(settings), poll_interval_seconds=settings.poll_interval_seconds)

    if args.once or args.now is not None:
        report = worker.run_tick_once(args.now)
        sent = report.sent if report is not None else 0
        print(f"sent={sent}")
        return 0

    scheduler = BlockingScheduler(timezone="UTC")
    worker.schedule(scheduler)
    logger.info("event_reminder_worker_started: poll_interval_seconds=%s", settings.poll_interval_seconds)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown(wait=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
