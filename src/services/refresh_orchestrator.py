"""Schedules background processing runs for the vault"""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.models.refresh_config import RefreshResult
from src.models.run_result import RunStatus
from src.services.manager import EmbeddingsManager

logger = logging.getLogger(__name__)

VAULT_RUN_JOB_ID = "vault_run"
PERIODIC_JOB_ID = "vault_refresh"


class RefreshOrchestrator:
    """Run the manager's vault pass on a delay or a fixed interval"""

    def __init__(self, manager: EmbeddingsManager):
        """
        Initialize refresh orchestrator

        Args:
            manager: Manager whose scheduled runs this orchestrator drives
        """
        self.manager = manager
        self.scheduler: AsyncIOScheduler | None = None

    def configure_scheduler(
        self,
        scheduler: AsyncIOScheduler,
        interval_minutes: int = 0,
        max_concurrent_jobs: int = 1,
    ) -> None:
        """
        Attach a scheduler and optionally add the periodic vault run

        Args:
            scheduler: AsyncIOScheduler instance (started by the caller)
            interval_minutes: Periodic run interval in minutes (0 disables)
            max_concurrent_jobs: Maximum concurrent runs per job
        """
        self.scheduler = scheduler
        self.manager.attach_scheduler(self)

        if interval_minutes <= 0:
            return

        self.scheduler.add_job(
            self.refresh_once,
            trigger=IntervalTrigger(minutes=interval_minutes, start_date=datetime.now(UTC)),
            id=PERIODIC_JOB_ID,
            name="Periodic vault processing",
            max_instances=max_concurrent_jobs,
            replace_existing=True,
        )
        logger.info(f"Scheduled vault processing every {interval_minutes} minutes")

    def schedule_vault_run(self, delay_seconds: float) -> None:
        """Schedule a one-off run; an earlier pending run is kept"""
        if self.scheduler is None:
            return

        run_date = datetime.now(UTC) + timedelta(seconds=max(0.0, delay_seconds))
        existing = self.scheduler.get_job(VAULT_RUN_JOB_ID)
        next_run_time = getattr(existing, "next_run_time", None) if existing else None
        if next_run_time is not None and next_run_time <= run_date:
            return

        self.scheduler.add_job(
            self.refresh_once,
            trigger=DateTrigger(run_date=run_date),
            id=VAULT_RUN_JOB_ID,
            name="Vault processing",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug(f"Vault processing scheduled in {delay_seconds:.1f}s")

    def cancel_scheduled_vault_run(self) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(VAULT_RUN_JOB_ID)
        except JobLookupError:
            pass

    def stop_scheduler(self) -> None:
        """Remove every job this orchestrator added"""
        if not self.scheduler:
            return
        for job_id in (VAULT_RUN_JOB_ID, PERIODIC_JOB_ID):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                logger.debug(f"Job {job_id} not found during shutdown")
        logger.info("Stopped vault processing scheduler")

    async def refresh_once(self) -> RefreshResult:
        """
        Execute a single vault processing run

        Returns:
            RefreshResult: Outcome and timing of the run
        """
        start_time = datetime.now()

        try:
            logger.info("Starting vault processing run")
            run = await self.manager.run_scheduled_processing()
            end_time = datetime.now()
            duration_seconds = (end_time - start_time).total_seconds()

            if run.status == RunStatus.ABORTED:
                logger.warning(f"Vault processing aborted: {run.message}")
            else:
                logger.info(
                    f"Vault processing {run.status.value} in {duration_seconds:.2f}s "
                    f"({run.processed} notes)"
                )

            return RefreshResult(
                success=run.status != RunStatus.ABORTED,
                status=run.status,
                processed=run.processed,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=duration_seconds,
                error=run.message if run.status == RunStatus.ABORTED else None,
            )

        except Exception as e:
            logger.error(f"Vault processing failed with exception: {e}", exc_info=True)
            end_time = datetime.now()
            return RefreshResult(
                success=False,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=(end_time - start_time).total_seconds(),
                error=str(e),
            )
