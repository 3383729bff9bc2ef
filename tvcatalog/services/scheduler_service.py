import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from tvcatalog.config import settings
from tvcatalog.services.catalog_cache_service import get_catalog_cache


logger = logging.getLogger(__name__)


class PrefetchScheduler:
    """Scheduler that keeps the caches warm for a configured playlist"""

    def __init__(self):
        self.scheduler: AsyncIOScheduler | None = None

    @staticmethod
    def is_configured() -> bool:
        return bool(settings.prefetch_playlist_urls or settings.prefetch_epg_url)

    async def _prefetch_job(self) -> None:
        """Background job that reads through the cache, refreshing stale snapshots"""
        logger.info("Scheduled cache prefetch triggered")
        cache = get_catalog_cache()
        try:
            if settings.prefetch_playlist_urls:
                catalog = await cache.get_catalog(
                    settings.prefetch_playlist_urls,
                    settings.prefetch_update_interval,
                )
                logger.info("Prefetch: catalog holds %s channels", len(catalog.channels))
            if settings.prefetch_epg_url:
                guide = await cache.get_guide(settings.prefetch_epg_url)
                logger.info("Prefetch: guide %s", "available" if guide else "unavailable")
        except Exception as e:
            logger.error(f"Exception in scheduled prefetch: {e}", exc_info=True)

    def start(self) -> None:
        """Start the scheduler with the prefetch job"""
        if not self.is_configured():
            logger.info("No prefetch sources configured - scheduler not started")
            return

        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        try:
            trigger = CronTrigger.from_crontab(settings.prefetch_cron)
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", settings.prefetch_cron, exc)
            raise

        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self._prefetch_job,
            trigger=trigger,
            id="cache_prefetch",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )

        self.scheduler.start()
        next_time = self.get_next_run_time()
        logger.info(
            "Scheduler started. Next prefetch: %s",
            next_time.isoformat() if next_time else "unknown"
        )

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")
            self.scheduler = None

    def get_next_run_time(self) -> datetime | None:
        """Get next scheduled prefetch time"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job("cache_prefetch")
        return job.next_run_time if job else None


prefetch_scheduler = PrefetchScheduler()
