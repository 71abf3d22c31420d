from __future__ import annotations

import asyncio
import logging
from typing import Dict

from apps.workers.host import SyncHost, build_sources
from apps.workers.schedulers.cron import add_poll_job, add_wakeup_job, configure_scheduler
from connectors.base import SyncSource
from core.config import settings
from core.logging import configure_logging, log_event
from core.runtime.context import build_runtime

logger = logging.getLogger("sync.worker")
configure_logging(settings.log_level)


class WorkerOrchestrator:
    def __init__(self) -> None:
        self._scheduler = configure_scheduler()
        self.runtime = build_runtime(self._scheduler)
        self.runtime.tasks.bind()
        self.host = SyncHost(self.runtime)
        self.sources: Dict[str, SyncSource] = build_sources(self.runtime, self.host)

    async def start(self) -> None:
        add_poll_job(self._scheduler, self.poll_enabled_resources)
        add_wakeup_job(self._scheduler)
        self._scheduler.start()
        logger.info("Sync worker started", extra={"sources": sorted(self.sources)})
        await self._run_forever()

    async def poll_enabled_resources(self) -> None:
        """Catch changes whose webhooks never arrived."""
        for source in self.sources.values():
            for resource_id in await source.enabled_resources():
                try:
                    started = await source.start_incremental_sync(resource_id)
                except Exception:
                    logger.exception(
                        "Drift poll failed", extra={"source": source.name, "resource": resource_id}
                    )
                    continue
                log_event(logger, "poll.resource", connector=source.name, resource_id=resource_id, started=started)

    async def _run_forever(self) -> None:
        stop = asyncio.Event()
        try:
            await stop.wait()
        except asyncio.CancelledError:
            self._scheduler.shutdown(wait=False)
            raise


def main() -> None:
    orchestrator = WorkerOrchestrator()
    asyncio.run(orchestrator.start())


if __name__ == "__main__":
    main()
