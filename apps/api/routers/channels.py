from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from apps.api.middleware import get_current_user
from apps.api.models import (
    ActivityUpdateRequest,
    ActivityUpdateResponse,
    ChannelListResponse,
    EnableChannelRequest,
    SaveTokenRequest,
    TokenPayload,
)
from apps.api.rate_limit import limiter
from apps.api.runtime import get_sources
from connectors.base import SyncSource
from connectors.models import Channel, ResourceStatus

router = APIRouter(prefix="/channels", tags=["channels"])


def _source(connector: str, sources: Dict[str, SyncSource]) -> SyncSource:
    source = sources.get(connector)
    if source is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown connector: {connector}")
    return source


@router.get("/{connector}", response_model=ChannelListResponse)
@limiter.limit("30/minute")
async def list_channels(
    request: Request,
    connector: str,
    token: str = Query(..., min_length=1),
    _: TokenPayload = Depends(get_current_user),
    sources: Dict[str, SyncSource] = Depends(get_sources),
) -> ChannelListResponse:
    source = _source(connector, sources)
    return ChannelListResponse(connector=connector, channels=await source.get_channels(token))


@router.put("/{connector}/{channel_id}/token", status_code=status.HTTP_204_NO_CONTENT)
async def save_token(
    connector: str,
    channel_id: str,
    payload: SaveTokenRequest,
    _: TokenPayload = Depends(get_current_user),
    sources: Dict[str, SyncSource] = Depends(get_sources),
) -> None:
    source = _source(connector, sources)
    await source.runtime.integrations.save_token(source.provider, channel_id, payload.token)


@router.get("/{connector}/{channel_id}", response_model=ResourceStatus)
async def channel_status(
    connector: str,
    channel_id: str,
    _: TokenPayload = Depends(get_current_user),
    sources: Dict[str, SyncSource] = Depends(get_sources),
) -> ResourceStatus:
    return await _source(connector, sources).status(channel_id)


@router.post("/{connector}/{channel_id}/enable", response_model=ResourceStatus, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("10/minute")
async def enable_channel(
    request: Request,
    connector: str,
    channel_id: str,
    payload: EnableChannelRequest,
    _: TokenPayload = Depends(get_current_user),
    sources: Dict[str, SyncSource] = Depends(get_sources),
) -> ResourceStatus:
    source = _source(connector, sources)
    await source.on_channel_enabled(Channel(id=channel_id, title=payload.title or channel_id))
    return await source.status(channel_id)


@router.post("/{connector}/{channel_id}/disable", response_model=ResourceStatus)
@limiter.limit("10/minute")
async def disable_channel(
    request: Request,
    connector: str,
    channel_id: str,
    _: TokenPayload = Depends(get_current_user),
    sources: Dict[str, SyncSource] = Depends(get_sources),
) -> ResourceStatus:
    source = _source(connector, sources)
    await source.on_channel_disabled(Channel(id=channel_id, title=channel_id))
    return await source.status(channel_id)


@router.post("/{connector}/activities/update", response_model=ActivityUpdateResponse)
@limiter.limit("60/minute")
async def update_activity(
    request: Request,
    connector: str,
    payload: ActivityUpdateRequest,
    _: TokenPayload = Depends(get_current_user),
    sources: Dict[str, SyncSource] = Depends(get_sources),
) -> ActivityUpdateResponse:
    source = _source(connector, sources)
    try:
        written = await source.on_activity_updated(payload.activity, payload.changes)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ActivityUpdateResponse(connector=connector, written=written)
