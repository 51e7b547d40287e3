from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pytz import timezone

from healthcast.config import get_settings
from healthcast.db.session import DATABASE_URL
from healthcast.scheduler.jobs import regenerate_forecasts

settings = get_settings()

# Global scheduler instance; jobs persist in the application database by default.
scheduler = AsyncIOScheduler(
    jobstores={
        "default": SQLAlchemyJobStore(url=(settings.SCHEDULER_DB_URL or DATABASE_URL))
    },
    timezone=timezone(settings.SCHEDULER_TZ),
)


def configure_jobs() -> None:
    """
    Register recurring jobs with the scheduler.

    - regenerate-forecasts: nightly refresh of every REGENERATION_TARGETS key
    """
    scheduler.add_job(
        regenerate_forecasts,
        "cron",
        id="regenerate-forecasts",
        hour=settings.REGENERATION_HOUR,
        minute=0,
        replace_existing=True,
        misfire_grace_time=3600,
        coalesce=True,
        max_instances=1,
    )


async def init_scheduler(app) -> None:
    """FastAPI startup hook: register jobs and start the scheduler when enabled."""
    if not settings.SCHEDULER_ENABLED:
        return
    configure_jobs()
    scheduler.start()


async def shutdown_scheduler() -> None:
    """FastAPI shutdown hook: stop the scheduler cleanly."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
