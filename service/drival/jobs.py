"""
Repeating background jobs.

Uses APScheduler's AsyncIOScheduler so jobs run on the app's event loop.
Each tick is isolated: an exception is logged and the next tick runs as
scheduled.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    job_id: str
    name: str
    func: Callable[[], Awaitable[object]]
    interval_seconds: float

    async def run_once(self) -> bool:
        """Run one tick. Returns False if the tick raised."""
        try:
            await self.func()
            return True
        except Exception:
            logger.exception("[JOBS] %s tick failed", self.name)
            return False


class JobScheduler:

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler()
        self.jobs: Dict[str, ScheduledJob] = {}

    def add(self, job: ScheduledJob) -> None:
        self.jobs[job.job_id] = job
        self.scheduler.add_job(
            job.run_once,
            trigger=IntervalTrigger(seconds=job.interval_seconds),
            id=job.job_id,
            name=job.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(
                "[JOBS] Scheduler started: %s",
                ", ".join(f"{j.name} every {j.interval_seconds}s" for j in self.jobs.values()),
            )

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[JOBS] Scheduler stopped")
