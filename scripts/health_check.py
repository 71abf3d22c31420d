from __future__ import annotations

import asyncio
import json
from typing import Any, Dict

import httpx

from apps.workers.host import SyncHost, build_sources
from apps.workers.schedulers.cron import configure_scheduler
from core.cache.valkey_client import valkey_client
from core.runtime.context import build_runtime


async def check_api() -> Dict[str, Any]:
    url = "http://localhost:8000/health"
    async with httpx.AsyncClient(timeout=5.0) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()


async def check_valkey() -> bool:
    return await valkey_client.ping()


async def sync_status() -> Dict[str, Dict[str, Any]]:
    runtime = build_runtime(configure_scheduler())
    sources = build_sources(runtime, SyncHost(runtime))
    report: Dict[str, Dict[str, Any]] = {}
    for name, source in sources.items():
        report[name] = {
            resource_id: (await source.status(resource_id)).model_dump(mode="json", exclude_none=True)
            for resource_id in await source.enabled_resources()
        }
    return report


async def main() -> None:
    api_status, valkey_status = await asyncio.gather(check_api(), check_valkey(), return_exceptions=True)
    result = {
        "api": api_status if not isinstance(api_status, Exception) else str(api_status),
        "valkey": valkey_status if not isinstance(valkey_status, Exception) else str(valkey_status),
        "resources": await sync_status(),
    }
    print(json.dumps(result, indent=2))
    await valkey_client.close()


if __name__ == "__main__":
    asyncio.run(main())
