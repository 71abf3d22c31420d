from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from core.config import settings
from core.errors import (
    AuthorizationError,
    CursorExpiredError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def raise_for_provider_status(provider: str, response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = f"{provider} {response.request.method} {response.request.url.path} -> {status}: {response.text[:300]}"
    if status == 410:
        raise CursorExpiredError(detail, provider=provider)
    if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
        raise RateLimitedError(detail, provider=provider, retry_after=parse_retry_after(response.headers.get("retry-after")))
    if status in (401, 403):
        raise AuthorizationError(detail, provider=provider, status=status)
    if status >= 500:
        raise TransientProviderError(detail, provider=provider, status=status)
    raise ProviderError(detail, provider=provider, status=status)


class ProviderClient:
    """Authenticated JSON client for one provider's REST API."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        token: str,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json", **(headers or {})},
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, json: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{self.provider} request timed out: {path}", provider=self.provider) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{self.provider} transport error: {exc}", provider=self.provider) from exc
        raise_for_provider_status(self.provider, response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)
