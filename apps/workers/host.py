from __future__ import annotations

import logging
from typing import Any, Dict

from connectors import SOURCES, SyncSource
from core.logging import log_event
from core.runtime.callbacks import replayable
from core.runtime.context import Runtime

logger = logging.getLogger(__name__)

ACTIVITY_QUEUE = "ingest:activities"


class SyncHost:
    """Receives synced activities and hands them to the destination queue."""

    owner_id = "host"

    def __init__(self, runtime: Runtime, queue: str = ACTIVITY_QUEUE) -> None:
        self._kv = runtime.kv
        self._queue = queue
        runtime.callbacks.register_owner(self)

    @replayable
    async def on_item(self, activity: Dict[str, Any], channel_id: str) -> None:
        await self._kv.enqueue(self._queue, {"op": "upsert", "channel_id": channel_id, "activity": activity})

    @replayable
    async def on_channel_disabled(self, channel: Dict[str, Any]) -> None:
        await self._kv.enqueue(self._queue, {"op": "archive", "channel_id": channel["id"]})
        log_event(logger, "channel.archive_requested", channel_id=channel["id"])


def build_sources(runtime: Runtime, host: SyncHost) -> Dict[str, SyncSource]:
    return {
        name: source_cls(runtime, on_item=host.on_item, on_disabled=host.on_channel_disabled)
        for name, source_cls in SOURCES.items()
    }
