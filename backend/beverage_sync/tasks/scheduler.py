"""Optional periodic trigger for forward ingestion."""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from beverage_sync.config import RunKind, get_settings
from beverage_sync.errors import RemoteCommandError
from beverage_sync.schemas.run import StartStatus
from beverage_sync.services.control import get_controller

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def trigger_forward_ingestion_job() -> None:
    """Start a forward run unless one is already live."""
    logger.info("Scheduled forward ingestion trigger")
    try:
        result = await get_controller(get_settings()).start(RunKind.FORWARD)
    except RemoteCommandError as e:
        logger.error(f"Scheduled trigger could not reach orchestrator host: {e}")
        return
    if result.status == StartStatus.ALREADY_RUNNING:
        logger.info(f"Skipping scheduled trigger: {result.message}")
    else:
        logger.info(result.message)


def setup_scheduler() -> AsyncIOScheduler | None:
    """Start the scheduler when a trigger interval is configured."""
    global scheduler

    settings = get_settings()
    if settings.forward_trigger_interval_minutes <= 0:
        logger.info("Scheduled forward ingestion disabled")
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        trigger_forward_ingestion_job,
        trigger=IntervalTrigger(minutes=settings.forward_trigger_interval_minutes),
        next_run_time=datetime.now(UTC) + timedelta(seconds=30),
        id="trigger_forward_ingestion",
        name="Trigger forward ingestion from Texas.gov",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started (forward ingestion every "
        f"{settings.forward_trigger_interval_minutes} min)"
    )
    return scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global scheduler

    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")
        scheduler = None
