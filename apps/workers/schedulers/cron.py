from __future__ import annotations

from typing import Any, Callable, Dict

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.redis import RedisJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings

# Process-local jobs (bound methods) live here; callback tasks go to "default".
LOCAL_JOBSTORE = "local"


def configure_scheduler() -> AsyncIOScheduler:
    jobstores: Dict[str, Any] = {LOCAL_JOBSTORE: MemoryJobStore()}
    if settings.scheduler_jobstore == "redis":
        jobstores["default"] = RedisJobStore(
            host=settings.valkey_host,
            port=settings.valkey_port,
            db=settings.valkey_db,
            jobs_key="sync:jobs",
            run_times_key="sync:run_times",
        )
    else:
        jobstores["default"] = MemoryJobStore()
    return AsyncIOScheduler(jobstores=jobstores, timezone=settings.cron_timezone)


def add_poll_job(scheduler: AsyncIOScheduler, func: Callable[[], Any]) -> None:
    scheduler.add_job(
        func,
        IntervalTrigger(minutes=settings.poll_interval_minutes),
        id="sync_drift_poll",
        jobstore=LOCAL_JOBSTORE,
        max_instances=1,
        replace_existing=True,
    )


def add_wakeup_job(scheduler: AsyncIOScheduler) -> None:
    # Tasks added by the API process land in the shared store without waking this scheduler.
    scheduler.add_job(
        _noop,
        IntervalTrigger(seconds=settings.scheduler_wakeup_seconds),
        id="jobstore_wakeup",
        jobstore=LOCAL_JOBSTORE,
        max_instances=1,
        replace_existing=True,
    )


async def _noop() -> None:
    return None
