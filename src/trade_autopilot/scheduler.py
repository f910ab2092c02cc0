from __future__ import annotations

from datetime import datetime
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .settings import settings


SCAN_JOB_ID = "autopilot_scan"


class ScanScheduler:
    """Interval timer for scan ticks; a slow tick never overlaps the next."""

    def __init__(self, tick: Callable[[], None], timezone: str | None = None) -> None:
        self.tick = tick
        self.scheduler = BackgroundScheduler(timezone=timezone or settings.timezone)

    @property
    def running(self) -> bool:
        return self.scheduler.running and self.scheduler.get_job(SCAN_JOB_ID) is not None

    def start(self, interval_minutes: int, *, run_immediately: bool = True) -> None:
        trigger = IntervalTrigger(minutes=interval_minutes, timezone=self.scheduler.timezone)
        options = {}
        if run_immediately:
            options["next_run_time"] = datetime.now(self.scheduler.timezone)
        self.scheduler.add_job(
            self.tick,
            trigger=trigger,
            id=SCAN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("Scan scheduler started. Every {} minutes", interval_minutes)

    def next_run_time(self) -> datetime | None:
        job = self.scheduler.get_job(SCAN_JOB_ID)
        return job.next_run_time if job else None

    def stop(self) -> None:
        if self.scheduler.get_job(SCAN_JOB_ID) is not None:
            self.scheduler.remove_job(SCAN_JOB_ID)
        logger.info("Scan scheduler stopped")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
