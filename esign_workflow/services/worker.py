"""Background worker: polls document jobs and sweeps reminders using APScheduler."""

import logging
from datetime import datetime
from typing import Optional

from esign_workflow.engine import WorkflowEngine
from esign_workflow.models.job import WorkerJob, WorkerStatus

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """Background worker owning the job poll and the reminder sweep.

    Each scheduled job runs with ``max_instances=1`` so a slow cycle is
    skipped rather than stacked; per-job leases keep processing correct
    even if two workers share a database.
    """

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine
        self.settings = engine.settings
        self._scheduler = None

    @property
    def scheduler(self):
        """Lazy-load APScheduler."""
        if self._scheduler is None:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        return self._scheduler

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    async def start(self) -> None:
        """Start the audit outbox consumer and register the interval jobs.

        Postconditions:
        - scheduler.running == True
        - jobs 'document_jobs' and 'reminder_sweep' scheduled
        """
        if self.is_running:
            logger.warning("Worker already running")
            return

        logger.info("Starting workflow worker...")
        self.engine.outbox.start()

        from apscheduler.triggers.interval import IntervalTrigger

        self.scheduler.add_job(
            self.poll_jobs,
            trigger=IntervalTrigger(seconds=self.settings.job_poll_seconds),
            id="document_jobs",
            name="Document job poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.sweep_reminders,
            trigger=IntervalTrigger(minutes=self.settings.reminder_sweep_minutes),
            id="reminder_sweep",
            name="Reminder sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            f"Worker started: jobs every {self.settings.job_poll_seconds}s, "
            f"reminders every {self.settings.reminder_sweep_minutes}min"
        )

    async def stop(self) -> None:
        """Shut down the scheduler and flush pending audit entries."""
        if self.is_running:
            logger.info("Stopping workflow worker...")
            self._scheduler.shutdown(wait=False)
            logger.info("Worker stopped")
        else:
            logger.info("Worker not running")
        await self.engine.outbox.stop()

    async def poll_jobs(self) -> int:
        try:
            processed = await self.engine.jobs.poll_and_process()
            return len(processed)
        except Exception as e:
            logger.error(f"Document job poll failed: {e}")
            return 0

    async def sweep_reminders(self) -> Optional[int]:
        try:
            result = await self.engine.notifications.sweep()
            return result.sent
        except Exception as e:
            logger.error(f"Reminder sweep failed: {e}")
            return None

    def get_status(self) -> WorkerStatus:
        """Return current worker state + job schedule."""
        jobs = []
        if self.is_running:
            for job in self._scheduler.get_jobs():
                jobs.append(WorkerJob(
                    id=job.id,
                    name=job.name or job.id,
                    next_run=job.next_run_time,
                    trigger=str(job.trigger),
                    status="active",
                ))

        return WorkerStatus(
            is_running=self.is_running,
            jobs=jobs,
            outbox_pending=self.engine.outbox.pending,
            last_check=datetime.now(),
        )
