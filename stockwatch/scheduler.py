"""
Cron scheduling of sweeps with per-kind single-flight guards.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from stockwatch.config import ScheduleConfig, SweepWindow, parse_hhmm

logger = logging.getLogger(__name__)

INTRADAY = "intraday"
RISK = "risk"
TECHNICAL = "technical"
US_INTRADAY = "us_intraday"
DAILY_REPORT = "daily_report"
HOLDINGS_SUMMARY = "holdings_summary"
INSTITUTIONAL = "institutional"
CLEANUP = "cleanup"

PERIODIC_SWEEPS = (INTRADAY, RISK, TECHNICAL, US_INTRADAY)


class SweepState(Enum):
    """Run state of one sweep kind."""

    IDLE = "idle"
    RUNNING = "running"


class SweepGuard:
    """Allows at most one running sweep per kind; overlapping ticks are skipped."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[str, SweepState] = {}

    def try_acquire(self, kind: str) -> bool:
        with self._lock:
            if self._states.get(kind) == SweepState.RUNNING:
                return False
            self._states[kind] = SweepState.RUNNING
            return True

    def release(self, kind: str) -> None:
        with self._lock:
            self._states[kind] = SweepState.IDLE

    def state(self, kind: str) -> SweepState:
        with self._lock:
            return self._states.get(kind, SweepState.IDLE)


def in_window(now: datetime, window: SweepWindow) -> bool:
    """
    Whether a moment falls inside the window's HH:MM bounds on a weekday.

    A window that ends before it starts runs overnight and belongs to the
    weekday it opened on, so Friday 22:00 through Saturday 05:00 is inside
    while Sunday night is not.
    """
    start, end = parse_hhmm(window.start), parse_hhmm(window.end)
    current = (now.hour, now.minute)
    if start <= end:
        return now.weekday() < 5 and start <= current <= end
    if current >= start:
        return now.weekday() < 5
    if current <= end:
        return (now - timedelta(days=1)).weekday() < 5
    return False


def _cron_for_window(window: SweepWindow, timezone: ZoneInfo) -> CronTrigger:
    start_hour, _ = parse_hhmm(window.start)
    end_hour, _ = parse_hhmm(window.end)
    if start_hour > end_hour:
        return CronTrigger(
            day_of_week="mon-sat",
            hour=f"{start_hour}-23,0-{end_hour}",
            minute=f"*/{window.every_minutes}",
            timezone=timezone,
        )
    return CronTrigger(
        day_of_week="mon-fri",
        hour=f"{start_hour}-{end_hour}",
        minute=f"*/{window.every_minutes}",
        timezone=timezone,
    )


def _cron_at(hhmm: str, timezone: ZoneInfo, weekdays_only: bool = True) -> CronTrigger:
    hour, minute = parse_hhmm(hhmm)
    return CronTrigger(
        day_of_week="mon-fri" if weekdays_only else "*",
        hour=hour,
        minute=minute,
        timezone=timezone,
    )


class SweepScheduler:
    """
    Registers every sweep as an APScheduler cron job.

    ``run_sweep`` is the app's entry point for a sweep kind; it applies the
    single-flight guard itself. Periodic sweeps are additionally gated by
    their time window since cron hour ranges are coarser than HH:MM bounds.
    """

    def __init__(
        self,
        run_sweep: Callable[[str], object],
        config: ScheduleConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.run_sweep = run_sweep
        self.config = config
        self.timezone = ZoneInfo(config.timezone)
        self.clock = clock or (lambda: datetime.now(self.timezone))
        self.scheduler = BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)

    def windows(self) -> dict[str, SweepWindow]:
        return {
            INTRADAY: self.config.intraday,
            RISK: self.config.risk,
            TECHNICAL: self.config.technical,
            US_INTRADAY: self.config.us_intraday,
        }

    def register_jobs(self) -> None:
        """Add all sweep jobs, replacing existing ones."""
        for kind, window in self.windows().items():
            self.scheduler.add_job(
                self.tick,
                trigger=_cron_for_window(window, self.timezone),
                args=[kind],
                id=kind,
                name=f"{kind} sweep",
                replace_existing=True,
            )

        daily = [
            (DAILY_REPORT, self.config.daily_report_at, True),
            (HOLDINGS_SUMMARY, self.config.holdings_summary_at, True),
            (INSTITUTIONAL, self.config.institutional_at, True),
            (CLEANUP, self.config.cleanup_at, False),
        ]
        for kind, at, weekdays_only in daily:
            self.scheduler.add_job(
                self.run_sweep,
                trigger=_cron_at(at, self.timezone, weekdays_only),
                args=[kind],
                id=kind,
                name=kind.replace("_", " "),
                replace_existing=True,
            )
        logger.info(f"Registered {len(self.scheduler.get_jobs())} scheduled jobs")

    def tick(self, kind: str) -> bool:
        """Run a periodic sweep if the current time is inside its window."""
        window = self.windows()[kind]
        now = self.clock()
        if not in_window(now, window):
            logger.debug(f"Skipping {kind} sweep outside {window.start}-{window.end}")
            return False
        self.run_sweep(kind)
        return True

    def start(self) -> None:
        if not self.scheduler.running:
            self.register_jobs()
            self.scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Scheduler shut down")

    @staticmethod
    def _job_executed(event) -> None:
        logger.debug(f"Job {event.job_id} finished (scheduled {event.scheduled_run_time})")

    @staticmethod
    def _job_error(event) -> None:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
