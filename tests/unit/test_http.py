import httpx
import pytest

from connectors.http import ProviderClient
from core.errors import (
    AuthorizationError,
    CursorExpiredError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)


def _client(handler):
    return ProviderClient("fake", "https://api.example.com", "tok", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_json_body_and_auth_header():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"data": [1, 2]})

    async with _client(handler) as client:
        result = await client.get("/items", params={"limit": 50})

    assert result == {"data": [1, 2]}
    assert seen == {"auth": "Bearer tok", "params": {"limit": "50"}}


@pytest.mark.asyncio
async def test_empty_response_returns_none():
    async with _client(lambda request: httpx.Response(204)) as client:
        assert await client.delete("/items/1") is None


@pytest.mark.parametrize(
    "response,error",
    [
        (httpx.Response(410, text="gone"), CursorExpiredError),
        (httpx.Response(429, headers={"retry-after": "12"}), RateLimitedError),
        (httpx.Response(403, headers={"x-ratelimit-remaining": "0"}), RateLimitedError),
        (httpx.Response(401), AuthorizationError),
        (httpx.Response(403), AuthorizationError),
        (httpx.Response(503), TransientProviderError),
        (httpx.Response(404), ProviderError),
    ],
)
@pytest.mark.asyncio
async def test_status_codes_map_to_provider_errors(response, error):
    async with _client(lambda request: response) as client:
        with pytest.raises(error) as excinfo:
            await client.get("/items")
    assert excinfo.value.provider == "fake"


@pytest.mark.asyncio
async def test_retry_after_is_parsed():
    async with _client(lambda request: httpx.Response(429, headers={"retry-after": "12"})) as client:
        with pytest.raises(RateLimitedError) as excinfo:
            await client.get("/items")
    assert excinfo.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_transport_failures_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransientProviderError):
            await client.get("/items")
