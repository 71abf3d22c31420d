from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from core.cache.valkey_client import valkey_client
from core.config import settings
from core.errors import WebhookNotFoundError
from core.logging import log_event
from core.runtime.callbacks import Callback, CallbackRegistry

logger = logging.getLogger(__name__)

_KEY_PREFIX = "webhook:"


class WebhookRequest(BaseModel):
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    raw_body: str = ""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class WebhookReply(BaseModel):
    status: int = 200
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None


class WebhookGateway:
    """Allocates stable public URLs and routes inbound requests to handler callbacks."""

    def __init__(self, registry: CallbackRegistry, kv: Any = None, base_url: Optional[str] = None) -> None:
        self._registry = registry
        self._kv = kv or valkey_client
        self._base_url = (base_url or settings.public_base_url).rstrip("/")

    async def create_webhook(self, handler: Callable[..., Any], *args: Any) -> str:
        owner_id, method = self._registry.describe(handler)
        webhook_id = self._webhook_id(owner_id, method, args)
        key = f"{_KEY_PREFIX}{webhook_id}"
        if await self._kv.get(key) is None:
            token = await self._registry.create_from_parent(handler, *args)
            await self._kv.set(key, token)
            log_event(logger, "webhook.created", webhook_id=webhook_id, owner=owner_id, method=method)
        return self.url_for(webhook_id)

    async def delete_webhook(self, url: str) -> None:
        webhook_id = self.webhook_id_from_url(url)
        key = f"{_KEY_PREFIX}{webhook_id}"
        token = await self._kv.get(key)
        if token:
            await self._registry.delete(Callback(token))
        await self._kv.delete(key)
        log_event(logger, "webhook.deleted", webhook_id=webhook_id)

    async def dispatch(self, webhook_id: str, request: WebhookRequest) -> Optional[WebhookReply]:
        token = await self._kv.get(f"{_KEY_PREFIX}{webhook_id}")
        if not token:
            raise WebhookNotFoundError(webhook_id)
        result = await self._registry.run(Callback(token), request.model_dump(mode="json"))
        if result is None:
            return None
        return WebhookReply.model_validate(result)

    def url_for(self, webhook_id: str) -> str:
        return f"{self._base_url}/webhooks/{webhook_id}"

    @staticmethod
    def webhook_id_from_url(url: str) -> str:
        return urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]

    @staticmethod
    def _webhook_id(owner_id: str, method: str, args: Any) -> str:
        material = json.dumps([owner_id, method, list(args)], sort_keys=True, default=str)
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]
