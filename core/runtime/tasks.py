from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.jobstores.base import JobLookupError

from core.config import settings
from core.errors import CallbackNotFoundError, RateLimitedError
from core.logging import log_event
from core.metrics import TASKS
from core.runtime.callbacks import Callback, CallbackRegistry

logger = logging.getLogger(__name__)

_active: Optional["TaskScheduler"] = None


async def execute_task(token: str, attempt: int = 0) -> None:
    # Module-level so persistent job stores can reference it by import path.
    if _active is None:
        raise RuntimeError("No TaskScheduler bound in this process")
    await _active.execute(Callback(token), attempt)


def backoff_seconds(attempt: int) -> float:
    return float(min(settings.task_backoff_base_seconds * (2**attempt), settings.task_backoff_max_seconds))


class TaskScheduler:
    """Durable "run this callback now or later" on top of APScheduler.

    Execution is at-least-once: a task that raises is rescheduled with
    exponential backoff until ``task_max_attempts`` is reached.
    """

    def __init__(self, registry: CallbackRegistry, scheduler: Any, max_attempts: Optional[int] = None) -> None:
        self._registry = registry
        self._scheduler = scheduler
        self._max_attempts = max_attempts or settings.task_max_attempts

    def bind(self) -> "TaskScheduler":
        global _active
        _active = self
        return self

    async def run_task(self, token: Callback, run_at: Optional[datetime] = None) -> str:
        task_id = uuid.uuid4().hex
        self._add_job(task_id, token, run_at or datetime.now(timezone.utc), attempt=0)
        log_event(logger, "task.scheduled", task_id=task_id, run_at=run_at)
        return task_id

    async def cancel_task(self, task_id: str) -> None:
        job = self._scheduler.get_job(task_id)
        if job is None:
            return
        try:
            self._scheduler.remove_job(task_id)
        except JobLookupError:
            return
        await self._registry.delete(job.args[0])
        log_event(logger, "task.cancelled", task_id=task_id)

    async def execute(self, token: Callback, attempt: int) -> None:
        try:
            await self._registry.run(token)
        except CallbackNotFoundError:
            logger.warning("Dropping task with unknown callback", extra={"token": token})
            TASKS.labels("abandoned").inc()
            return
        except RateLimitedError as exc:
            logger.warning("Task rate limited", extra={"token": token, "attempt": attempt, "retry_after": exc.retry_after})
            await self._retry(token, attempt, exc.retry_after or backoff_seconds(attempt))
            return
        except Exception:
            logger.exception("Task failed", extra={"token": token, "attempt": attempt})
            await self._retry(token, attempt, backoff_seconds(attempt))
            return
        TASKS.labels("succeeded").inc()
        await self._registry.delete(token)

    async def _retry(self, token: Callback, attempt: int, delay: float) -> None:
        if attempt + 1 >= self._max_attempts:
            logger.error("Task abandoned after retries", extra={"token": token, "attempts": attempt + 1})
            TASKS.labels("abandoned").inc()
            await self._registry.delete(token)
            return
        TASKS.labels("retried").inc()
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._add_job(uuid.uuid4().hex, token, run_at, attempt=attempt + 1)

    def _add_job(self, task_id: str, token: Callback, run_at: datetime, attempt: int) -> None:
        self._scheduler.add_job(
            execute_task,
            trigger="date",
            run_date=run_at,
            args=[str(token), attempt],
            id=task_id,
            misfire_grace_time=None,
        )
