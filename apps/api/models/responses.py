from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from connectors.models import Channel


class HealthDependency(BaseModel):
    name: str
    status: str
    latency_ms: int
    details: Optional[str] = None


class HealthStatus(BaseModel):
    status: str
    timestamp: datetime
    dependencies: List[HealthDependency]


class ChannelListResponse(BaseModel):
    connector: str
    channels: List[Channel]


class ActivityUpdateResponse(BaseModel):
    connector: str
    written: bool
