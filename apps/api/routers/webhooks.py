from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

from apps.api.rate_limit import limiter
from apps.api.runtime import get_runtime
from core.runtime.context import Runtime
from core.runtime.webhooks import WebhookRequest

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _webhook_request(request: Request) -> WebhookRequest:
    raw = (await request.body()).decode("utf-8", errors="replace")
    body: Any = None
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            body = raw
    return WebhookRequest(
        method=request.method,
        headers={name.lower(): value for name, value in request.headers.items()},
        params=dict(request.query_params),
        body=body,
        # Signatures are computed over the exact bytes the provider sent.
        raw_body=raw,
    )


@router.api_route("/{webhook_id}", methods=["GET", "POST"])
@limiter.exempt
async def receive_webhook(webhook_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> Response:
    reply = await runtime.webhooks.dispatch(webhook_id, await _webhook_request(request))
    if reply is None:
        return Response(status_code=200)
    return Response(status_code=reply.status, headers=reply.headers, content=reply.body or "")
