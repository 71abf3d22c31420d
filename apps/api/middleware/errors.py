from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from core.errors import ProviderError, WebhookNotFoundError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc: HTTPException):  # type: ignore[override]
        logger.warning("HTTP error", extra={"status": exc.status_code, "detail": exc.detail})
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(WebhookNotFoundError)
    async def webhook_not_found_handler(request, exc: WebhookNotFoundError):  # type: ignore[override]
        logger.warning("Unknown webhook", extra={"webhook_id": exc.webhook_id})
        return JSONResponse(status_code=404, content={"detail": "Unknown webhook"})

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request, exc: ProviderError):  # type: ignore[override]
        logger.warning("Provider error", extra={"provider": exc.provider, "status": exc.status})
        return JSONResponse(status_code=502, content={"detail": str(exc), "provider": exc.provider})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request, exc: Exception):  # type: ignore[override]
        logger.exception("Unhandled server error")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
