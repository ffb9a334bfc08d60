import logging
from typing import Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.exceptions import SyncError, SyncAlreadyRunningError
from ingestion.progress import ProgressBroadcaster
from ingestion.runner import SyncOrchestrator
from models.base import SyncType, ExecutionType

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Cron-style triggers for the orchestrator:
    - a daily sync at SYNC_DAILY_HOUR (UTC)
    - a resume sweep for runs paused by their time budget
    - a sweep of expired progress subscriptions (when given a broadcaster)
    """

    def __init__(
        self,
        orchestrator_factory: Callable[[], SyncOrchestrator],
        scheduler: AsyncIOScheduler = None,
        broadcaster: Optional[ProgressBroadcaster] = None
    ):
        self.orchestrator_factory = orchestrator_factory
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.broadcaster = broadcaster

    async def run_daily_job(self):
        """Job to run the daily sync"""
        logger.info("Scheduler: Starting daily sync")
        orchestrator = self.orchestrator_factory()
        try:
            result = await orchestrator.run(
                SyncType.DAILY,
                execution_type=ExecutionType.CRON,
                triggered_by="scheduler",
            )
            logger.info(
                f"Scheduler: Daily sync {result.orchestrator_id} finished with {result.status.value}"
            )
        except SyncAlreadyRunningError:
            logger.info("Scheduler: Another sync is running, skipping daily sync")
        except SyncError as e:
            logger.error(f"Scheduler: Daily sync failed - {e}")

    async def run_resume_job(self):
        """Job to continue runs that were paused by their time budget"""
        orchestrator = self.orchestrator_factory()
        try:
            results = await orchestrator.resume_incomplete()
            if results:
                logger.info(f"Scheduler: Resumed {len(results)} paused runs")
        except SyncAlreadyRunningError:
            logger.debug("Scheduler: Another sync is running, skipping resume sweep")
        except SyncError as e:
            logger.error(f"Scheduler: Resume sweep failed - {e}")

    async def run_progress_sweep_job(self):
        """Job to drop progress subscriptions whose stream has ended or expired"""
        removed = self.broadcaster.sweep()
        if removed:
            logger.info(f"Scheduler: Dropped {removed} stale progress subscriptions")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_daily_job,
            trigger=CronTrigger(hour=settings.SYNC_DAILY_HOUR, minute=0),
            id="daily_sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_resume_job,
            trigger=IntervalTrigger(minutes=settings.SYNC_RESUME_INTERVAL_MINUTES),
            id="resume_sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self.broadcaster is not None:
            self.scheduler.add_job(
                self.run_progress_sweep_job,
                trigger=IntervalTrigger(seconds=settings.PROGRESS_SWEEP_INTERVAL_SECONDS),
                id="progress_sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (daily at {settings.SYNC_DAILY_HOUR:02d}:00 UTC)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync Scheduler stopped")
