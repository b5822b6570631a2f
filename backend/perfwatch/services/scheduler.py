"""
Scheduler service for the collection tick and maintenance jobs.

Uses APScheduler to run:
- The collection tick (every tick_seconds, never overlapping itself)
- Hourly archival of rows past their retention age
- Daily cleanup of archive files past the archive retention period
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

TICK_JOB_ID = "collection_tick"
ARCHIVE_JOB_ID = "archive_and_purge"
ARCHIVE_CLEANUP_JOB_ID = "archive_cleanup"


class SchedulerService:
    """Owns one AsyncIOScheduler, bound to the running event loop on start()."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone=UTC)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def stop(self):
        """
        Stop the scheduler.

        Jobs are removed first: with APScheduler 3.11 the shutdown itself only
        completes on the next pass of the event loop.
        """
        if self.scheduler.running:
            self.scheduler.remove_all_jobs()
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def schedule_tick(self, func: Callable[[], Awaitable[None]], seconds: int) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=TICK_JOB_ID,
            name="Collection tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=seconds,
            next_run_time=datetime.now(UTC),
        )
        logger.info("Collection tick scheduled every %d seconds", seconds)

    def reschedule_tick(self, seconds: int) -> None:
        if self.scheduler.get_job(TICK_JOB_ID) is None:
            return
        self.scheduler.reschedule_job(TICK_JOB_ID, trigger=IntervalTrigger(seconds=seconds))
        logger.info("Collection tick rescheduled to every %d seconds", seconds)

    def remove_tick(self) -> None:
        if self.scheduler.get_job(TICK_JOB_ID) is not None:
            self.scheduler.remove_job(TICK_JOB_ID)

    def schedule_maintenance(
        self,
        archive: Callable[[], Awaitable[None]],
        cleanup: Callable[[], Awaitable[None]],
    ) -> None:
        self.scheduler.add_job(
            archive,
            trigger=IntervalTrigger(hours=1),
            id=ARCHIVE_JOB_ID,
            name="Archive and purge expired rows",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
        )
        self.scheduler.add_job(
            cleanup,
            trigger=CronTrigger(hour=2, minute=30),
            id=ARCHIVE_CLEANUP_JOB_ID,
            name="Remove expired archive files",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        logger.info("Maintenance jobs scheduled (archive hourly, archive cleanup daily at 02:30 UTC)")

    def get_jobs(self) -> list[dict]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in self.scheduler.get_jobs()
        ]
