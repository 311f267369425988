"""Scheduled jobs.

A :class:`ScheduledTask` is a plain callable plus a description of when it should
fire. Tests call ``task.run()`` directly; ``build_scheduler`` hands the same tasks
to APScheduler for real time-based triggering.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyTrigger:
    """Fire once per calendar day at ``hour:minute`` local time."""

    hour: int = 0
    minute: int = 0

    def __post_init__(self) -> None:
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError(f"Invalid time of day: {self.hour:02d}:{self.minute:02d}")

    def to_cron_trigger(self) -> CronTrigger:
        return CronTrigger(hour=self.hour, minute=self.minute)

    def describe(self) -> str:
        return f"daily at {self.hour:02d}:{self.minute:02d}"


@dataclass
class ScheduledTask:
    name: str
    func: Callable[[], Any]
    trigger: DailyTrigger = field(default_factory=DailyTrigger)
    last_run: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None

    def run(self) -> Any:
        """Run the task once. Failures are logged and recorded, never raised."""
        self.last_run = datetime.now()
        logger.info(f"Running scheduled task '{self.name}'")
        try:
            self.last_result = self.func()
            self.last_error = None
        except Exception as e:
            self.last_result = None
            self.last_error = str(e)
            logger.exception(f"Scheduled task '{self.name}' failed: {e}")
            return None
        logger.info(f"Scheduled task '{self.name}' completed")
        return self.last_result


def daily_fine_sweep_task(library, trigger: Optional[DailyTrigger] = None) -> ScheduledTask:
    """The nightly overdue sweep; ``library`` is anything with ``generate_fines_for_overdue_books``."""
    trigger = trigger or DailyTrigger(settings.fine_sweep_hour, settings.fine_sweep_minute)

    def sweep():
        report = library.generate_fines_for_overdue_books()
        logger.info(f"Generated fines for {len(report.entries)} overdue books")
        return report

    return ScheduledTask(name="daily-fine-sweep", func=sweep, trigger=trigger)


def build_scheduler(tasks: Iterable[ScheduledTask], scheduler: Optional[BaseScheduler] = None) -> BaseScheduler:
    """Register ``tasks`` on an APScheduler instance (not started)."""
    scheduler = scheduler or BackgroundScheduler()
    for task in tasks:
        scheduler.add_job(
            task.run,
            trigger=task.trigger.to_cron_trigger(),
            id=task.name,
            name=task.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled '{task.name}' {task.trigger.describe()}")
    return scheduler
