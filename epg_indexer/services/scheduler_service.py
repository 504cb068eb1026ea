import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from epg_indexer.config import settings
from epg_indexer.database import session_scope
from epg_indexer.services.db_service import load_refresh_sources
from epg_indexer.services.epg_refresh_service import start_background_refresh


logger = logging.getLogger(__name__)

class EPGScheduler:
    """Scheduler for automatic EPG refreshes"""

    def __init__(self):
        self.scheduler: AsyncIOScheduler | None = None

    async def _refresh_job(self) -> None:
        """Background job that starts an EPG refresh"""
        logger.info("Scheduled EPG refresh triggered")
        try:
            async with session_scope() as session:
                sources = await load_refresh_sources(session)
        except Exception as e:
            logger.error(f"Could not load EPG sources for scheduled refresh: {e}", exc_info=True)
            return

        if not sources:
            logger.info("No EPG sources configured - scheduled refresh skipped")
            return

        if start_background_refresh(sources) is None:
            logger.info("Scheduled refresh skipped: a refresh is already running")

    def start(self) -> None:
        """Start the scheduler with the EPG refresh job"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        try:
            trigger = CronTrigger.from_crontab(settings.epg_refresh_cron)
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", settings.epg_refresh_cron, exc)
            raise

        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.scheduler.add_job(
            self._refresh_job,
            trigger=trigger,
            id='epg_refresh',
            max_instances=1,
            coalesce=True,
            misfire_grace_time=settings.epg_refresh_misfire_grace_sec
        )

        self.scheduler.start()
        next_time = self.get_next_run_time()
        logger.info(
            "Scheduler started. Next refresh: %s",
            next_time.isoformat() if next_time else "unknown"
        )

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")
            self.scheduler = None

    def get_next_run_time(self) -> datetime | None:
        """Get next scheduled refresh time"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job('epg_refresh')
        return job.next_run_time if job else None


epg_scheduler = EPGScheduler()
