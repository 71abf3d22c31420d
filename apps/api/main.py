from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.responses import JSONResponse, Response

from apps.api.middleware import LoggingMiddleware, register_exception_handlers
from apps.api.rate_limit import limiter
from apps.api.routers import channels_router, health_router, webhooks_router
from apps.api.runtime import api_runtime
from core.cache.valkey_client import valkey_client
from core.config import settings
from core.logging import configure_logging
from core.metrics import REQUEST_COUNT, REQUEST_LATENCY, registry

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    runtime = api_runtime()
    runtime.start()
    logger.info("API runtime started", extra={"sources": sorted(runtime.sources)})
    try:
        yield
    finally:
        runtime.shutdown()
        await valkey_client.close()


app = FastAPI(title="Activity Sync", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda request, exc: JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"}))


def metrics_middleware(app: FastAPI) -> Callable:
    @app.middleware("http")
    async def _metrics(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        # Route templates keep webhook ids out of label values.
        endpoint = getattr(request.scope.get("route"), "path", request.url.path)
        REQUEST_LATENCY.labels(endpoint).observe((time.perf_counter() - start) * 1000)
        REQUEST_COUNT.labels(request.method, endpoint).inc()
        return response

    return _metrics


app.add_middleware(LoggingMiddleware)
app.add_middleware(SlowAPIMiddleware)
metrics_middleware(app)
register_exception_handlers(app)

app.include_router(health_router)
app.include_router(channels_router)
app.include_router(webhooks_router)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.get("/metrics")
async def metrics() -> Response:
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
