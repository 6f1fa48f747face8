"""
APScheduler integration for FastAPI.

Runs housekeeping jobs in-process.

Jobs:
- Rate limit purge: Deletes expired rate limit counters (top of every hour)
"""

from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy, JobOutcome, JobReleased
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.cron import CronTrigger

from flashpush.config import get_settings
from flashpush.core.database import AsyncSessionLocal
from flashpush.core.logging import get_logger

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncScheduler | None = None


async def purge_rate_limits_job() -> None:
    """Hourly job - deletes expired rate limit counters."""
    from flashpush.services.rate_limit import purge_expired_counters

    logger.debug("scheduled_rate_limit_purge_started")
    async with AsyncSessionLocal() as db:
        try:
            deleted = await purge_expired_counters(db)
            await db.commit()
            logger.bind(deleted=deleted).info("scheduled_rate_limit_purge_completed")
        except Exception as e:
            await db.rollback()
            logger.bind(error=str(e)).error("scheduled_rate_limit_purge_failed")
            raise  # Re-raise so APScheduler records the failure


async def start_scheduler() -> AsyncScheduler | None:
    """Initialize and start the scheduler with in-memory storage."""
    global scheduler

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    # Schedules are re-registered at every startup, nothing needs to persist
    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Start the scheduler first (required before calling other methods in APScheduler 4.x)
    await scheduler.__aenter__()

    scheduler.subscribe(_on_job_completed)

    await scheduler.add_schedule(
        purge_rate_limits_job,
        CronTrigger(minute=0),
        id="purge_rate_limits",
        conflict_policy=ConflictPolicy.replace,
    )

    # Start the scheduler's background worker to actually process jobs
    await scheduler.start_in_background()

    logger.bind(jobs=["purge_rate_limits"]).info("scheduler_started")

    return scheduler


async def _on_job_completed(event: Any) -> None:
    """Log failed job runs."""
    if isinstance(event, JobReleased) and event.outcome == JobOutcome.error:
        exception = getattr(event, "exception", None)
        logger.bind(
            schedule_id=event.schedule_id or "unknown",
            error=str(exception) if exception else None,
        ).error("scheduled_job_failed")


async def stop_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global scheduler
    if scheduler:
        await scheduler.__aexit__(None, None, None)
        logger.info("scheduler_stopped")
        scheduler = None
