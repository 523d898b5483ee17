"""Control-loop scheduler — interval jobs for the pool and gateway loops."""

from __future__ import annotations
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("anvil.scheduler")


class ControlLoops:
    """One AsyncIOScheduler per owner, so each pool or gateway can be
    started and torn down on its own.
    """

    def __init__(self, name: str):
        self.name = name
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        if self.running:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.start()
        logger.info(f"Control loops started for {self.name}")

    def stop(self):
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info(f"Control loops stopped for {self.name}")

    def add_interval_job(self, job_id: str, func, seconds: float, kwargs: dict | None = None):
        """Add an interval job. A tick still running when the next is due is skipped."""
        if not self.running:
            raise RuntimeError(f"Control loops for {self.name} are not running")

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            kwargs=kwargs or {},
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        logger.info(f"Scheduled '{job_id}' every {seconds}s ({self.name})")

    def remove_job(self, job_id: str):
        if not self.running:
            return
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
            logger.info(f"Removed job '{job_id}' ({self.name})")

    def list_jobs(self) -> list[dict]:
        if not self.running:
            return []
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs
