from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

from redis.asyncio import Redis

from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)


class ValkeyClient:
    def __init__(self) -> None:
        self._client = Redis(
            host=settings.valkey_host,
            port=settings.valkey_port,
            db=settings.valkey_db,
            decode_responses=True,
        )

    async def close(self) -> None:
        await self._client.close()

    async def ping(self) -> bool:
        response = await self._client.ping()
        return bool(response)

    async def get(self, key: str) -> Optional[Any]:
        value = await self._client.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(key, json.dumps(value), ex=ttl_seconds)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)

    async def keys(self, prefix: str) -> List[str]:
        return [key async for key in self._client.scan_iter(match=f"{prefix}*")]

    async def enqueue(self, queue: str, payload: Any) -> None:
        await self._client.lpush(queue, json.dumps(payload))
        log_event(logger, "queue.enqueue", queue=queue)

    async def dequeue(self, queue: str, timeout: int = 5) -> Optional[Any]:
        result = await self._client.brpop(queue, timeout=timeout)
        if result:
            _, data = result
            return json.loads(data)
        return None

    @property
    def raw(self) -> Redis:
        return self._client


valkey_client = ValkeyClient()
