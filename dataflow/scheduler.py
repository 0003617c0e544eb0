import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from dataflow.jobs import JobOrchestrator

logger = logging.getLogger(__name__)


class JobMaintenanceScheduler:
    """Periodically fails stale jobs and purges old terminal jobs."""

    def __init__(self, orchestrator: JobOrchestrator, interval_minutes: int = None):
        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes or settings.JOB_CLEANUP_INTERVAL_MINUTES
        self.scheduler = AsyncIOScheduler()

    async def run_cleanup_job(self):
        """Job to sweep stale and expired async jobs"""
        logger.info("Scheduler: Starting job cleanup")
        try:
            stale = await self.orchestrator.fail_stale_jobs()
            deleted = await self.orchestrator.delete_old_jobs()
            logger.info(f"Scheduler: cleanup done - {stale} stale, {deleted} deleted")
        except Exception as e:
            logger.error(f"Scheduler: job cleanup failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_cleanup_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="job_cleanup",
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.start()
        logger.info(f"Job maintenance scheduler started (every {self.interval_minutes} min)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Job maintenance scheduler stopped")
