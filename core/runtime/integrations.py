from __future__ import annotations

from typing import Any, Optional

from core.cache.valkey_client import valkey_client


class Integrations:
    """Access tokens per (provider, channel), written by the host once a connection is authorized."""

    def __init__(self, kv: Any = None) -> None:
        self._kv = kv or valkey_client

    async def get_token(self, provider: str, channel_id: str) -> Optional[str]:
        return await self._kv.get(f"auth:{provider}:{channel_id}")

    async def save_token(self, provider: str, channel_id: str, token: str) -> None:
        await self._kv.set(f"auth:{provider}:{channel_id}", token)

    async def delete_token(self, provider: str, channel_id: str) -> None:
        await self._kv.delete(f"auth:{provider}:{channel_id}")
