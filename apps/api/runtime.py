from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from apps.workers.host import SyncHost, build_sources
from apps.workers.schedulers.cron import configure_scheduler
from connectors.base import SyncSource
from core.runtime.context import Runtime, build_runtime

logger = logging.getLogger(__name__)


class ApiRuntime:
    """Sources and collaborators for the API process.

    The scheduler is started paused: this process only writes tasks to the
    shared job store and the worker executes them.
    """

    def __init__(self) -> None:
        self.scheduler = configure_scheduler()
        self.runtime = build_runtime(self.scheduler)
        self.host = SyncHost(self.runtime)
        self.sources: Dict[str, SyncSource] = build_sources(self.runtime, self.host)

    def start(self) -> None:
        self.scheduler.start(paused=True)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


_api_runtime: Optional[ApiRuntime] = None


def api_runtime() -> ApiRuntime:
    global _api_runtime
    if _api_runtime is None:
        _api_runtime = ApiRuntime()
    return _api_runtime


def get_runtime() -> Runtime:
    return api_runtime().runtime


def get_sources() -> Dict[str, Any]:
    return api_runtime().sources
