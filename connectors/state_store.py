from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel


class StateStore:
    """Durable key/value state scoped to one connector instance.

    Keys follow the ``<kind>_<resource_id>`` convention from ``connectors.keys``;
    values are stored as JSON and survive restarts.
    """

    def __init__(self, kv: Any, connector_name: str, instance_id: str) -> None:
        self._kv = kv
        self._prefix = f"connector:{connector_name}:{instance_id}:"

    async def get(self, key: str) -> Optional[Any]:
        return await self._kv.get(self._prefix + key)

    async def set(self, key: str, value: Any) -> None:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        await self._kv.set(self._prefix + key, value)

    async def clear(self, key: str) -> None:
        await self._kv.delete(self._prefix + key)

    async def list(self, prefix: str = "") -> List[str]:
        keys = await self._kv.keys(self._prefix + prefix)
        return [key[len(self._prefix):] for key in keys]
