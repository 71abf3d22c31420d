from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter

from apps.api.models import HealthDependency, HealthStatus
from apps.api.runtime import api_runtime
from core.cache.valkey_client import valkey_client
from core.metrics import HEALTH_STATUS

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=HealthStatus)
async def health() -> HealthStatus:
    dependencies: list[HealthDependency] = []

    start = time.perf_counter()
    valkey_status = "pass"
    valkey_details = None
    try:
        pong = await valkey_client.ping()
        valkey_status = "pass" if pong else "fail"
    except Exception as exc:
        valkey_status = "fail"
        valkey_details = str(exc)
    dependencies.append(
        HealthDependency(
            name="valkey",
            status=valkey_status,
            latency_ms=int((time.perf_counter() - start) * 1000),
            details=valkey_details,
        )
    )

    running = api_runtime().scheduler.running
    dependencies.append(
        HealthDependency(
            name="scheduler",
            status="pass" if running else "fail",
            latency_ms=0,
            details=None if running else "scheduler not started",
        )
    )

    overall = "pass" if all(dep.status == "pass" for dep in dependencies) else "fail"
    HEALTH_STATUS.set(1 if overall == "pass" else 0)
    return HealthStatus(status=overall, timestamp=datetime.now(tz=timezone.utc), dependencies=dependencies)
