"""Cron-style maintenance tasks run inside the API process."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from assistant.config import settings
from assistant.database import SessionLocal
from assistant.logging_config import get_logger
from assistant.services import summary_service
from assistant.services.queue_service import get_queue_registry

logger = get_logger("scheduler_service")

DAILY_SUMMARIES_JOB = "daily_summaries"
CLEAN_QUEUE_JOBS_JOB = "clean_queue_jobs"

scheduler: Optional[AsyncIOScheduler] = None


async def daily_summaries_task() -> None:
    db = SessionLocal()
    try:
        queued = await summary_service.generate_daily_summaries(db, get_queue_registry())
        logger.info("Scheduled daily summaries queued", extra={"context": {"groups": queued}})
    except Exception as e:
        logger.error(f"Scheduled daily summaries failed: {e}", exc_info=True)
    finally:
        db.close()


async def clean_queue_jobs_task() -> None:
    try:
        get_queue_registry().clean_old_jobs()
    except Exception as e:
        logger.error(f"Scheduled queue cleanup failed: {e}", exc_info=True)


def init_scheduler() -> AsyncIOScheduler:
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
        logger.info("Scheduler initialized", extra={"context": {"timezone": settings.scheduler_timezone}})
    return scheduler


def setup_scheduled_tasks(target: AsyncIOScheduler) -> None:
    target.add_job(
        daily_summaries_task,
        trigger=CronTrigger(hour=settings.daily_summary_hour, minute=0, timezone=settings.scheduler_timezone),
        id=DAILY_SUMMARIES_JOB,
        name="Queue 24h summaries for active groups",
        replace_existing=True,
    )
    target.add_job(
        clean_queue_jobs_task,
        trigger=CronTrigger(hour=settings.queue_clean_hour, minute=0, timezone=settings.scheduler_timezone),
        id=CLEAN_QUEUE_JOBS_JOB,
        name="Drop finished queue jobs older than a day",
        replace_existing=True,
    )
    logger.info("Scheduled tasks configured", extra={"context": {"tasks": [DAILY_SUMMARIES_JOB, CLEAN_QUEUE_JOBS_JOB]}})


def start_scheduler() -> None:
    """Must be called from a running event loop (AsyncIOScheduler binds to it)."""
    target = init_scheduler()
    if target.running:
        logger.warning("Scheduler already running")
        return
    setup_scheduled_tasks(target)
    target.start()
    logger.info("Scheduler started")


def stop_scheduler() -> None:
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
