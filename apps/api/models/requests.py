from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EnableChannelRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)


class SaveTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ActivityUpdateRequest(BaseModel):
    activity: Dict[str, Any]
    changes: Dict[str, Any] = Field(default_factory=dict)
