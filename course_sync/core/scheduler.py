import asyncio

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from course_sync.core.config import settings
from course_sync.core.errors import capture_message
from course_sync.core.logging_config import get_logger
from course_sync.db import engine
from course_sync.services.job_monitoring import JobMonitoringService
from course_sync.services.job_queue import has_active_job
from course_sync.services.jobs import CoursesSyncJob

logger = get_logger(__name__)

scheduler = AsyncIOScheduler()


def enqueue_update_sync() -> bool:
    """Enqueue an update sync unless one is already queued or running."""
    with Session(engine) as session:
        if has_active_job(session, CoursesSyncJob.__name__):
            logger.info("update_sync_already_queued")
            return False
        job = CoursesSyncJob.perform_later(session, "update", {})
        logger.info("update_sync_enqueued", job_id=job.job_id)
        return True


async def job_enqueue_update_sync():
    await asyncio.to_thread(enqueue_update_sync)


async def job_cleanup_old_data():
    """Daily prune of failed jobs and finished queue rows."""
    result = await asyncio.to_thread(JobMonitoringService().cleanup_old_data)
    logger.info("scheduled_cleanup_completed", **result)


async def job_health_check():
    status = await asyncio.to_thread(JobMonitoringService().health_check)
    if not status["healthy"]:
        capture_message(
            "Job health check failed",
            level="warning",
            context={"issues": status["issues"]},
            tags={"component": "job_monitoring"},
        )


def start_scheduler():
    # Job configuration for durability:
    # - max_instances=1: Prevent overlapping runs
    # - misfire_grace_time: Allow late execution if within grace period (then skip)
    # - coalesce=True: If multiple runs were missed, only run once when catching up

    # Incremental course sync, grace time of half the interval
    interval = settings.UPDATE_SYNC_INTERVAL_MINUTES
    scheduler.add_job(
        job_enqueue_update_sync,
        IntervalTrigger(minutes=interval),
        id="job_enqueue_update_sync",
        max_instances=1,
        misfire_grace_time=interval * 30,
        coalesce=True,
        replace_existing=True,
    )

    # Health check every 5 minutes
    scheduler.add_job(
        job_health_check,
        IntervalTrigger(minutes=5),
        id="job_health_check",
        max_instances=1,
        misfire_grace_time=120,
        coalesce=True,
        replace_existing=True,
    )

    # Daily cleanup at 3 AM UTC
    scheduler.add_job(
        job_cleanup_old_data,
        CronTrigger(hour=3, minute=0),
        id="job_cleanup_old_data",
        max_instances=1,
        misfire_grace_time=3600,  # 1 hour
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info("scheduler_started", update_sync_interval_minutes=interval)


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
