"""
APScheduler jobs for background sync.

An incremental Karbon sync runs every karbon_sync_interval_minutes (15 by
default). Webhooks keep work items fresh between runs; this job catches
everything Karbon does not push.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mottahub.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _incremental_sync,
        trigger="interval",
        minutes=settings.karbon_sync_interval_minutes,
        id="karbon_incremental_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _incremental_sync(engine) -> None:
    """
    Interval job: incremental sync of every kind.

    Idempotent; overlapping triggers are coalesced by the scheduler.
    """
    from mottahub.karbon.client import KarbonClient
    from mottahub.karbon.sync_service import KarbonSyncService

    logger.info("Scheduled Karbon sync starting at %s", datetime.utcnow().isoformat())

    try:
        async with KarbonClient.from_settings() as client:
            service = KarbonSyncService(client=client, engine=engine)
            summary = await service.run(incremental=True, trigger="scheduled")
        logger.info(
            "Scheduled Karbon sync done: synced=%d updated=%d errors=%d",
            summary.synced, summary.updated, summary.errors,
        )
    except Exception as exc:
        logger.error("Scheduled Karbon sync failed: %s", exc)
