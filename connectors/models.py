from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from core.runtime.webhooks import WebhookReply, WebhookRequest


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncState(BaseModel):
    """Progress of one sync run over one resource."""

    cursor: Optional[str] = None
    delta_token: Optional[str] = None
    batch_number: int = 1
    items_processed: int = 0
    initial_sync: bool = True
    min: Optional[datetime] = None
    max: Optional[datetime] = None
    sequence: int = 1
    updated_at: datetime = Field(default_factory=utcnow)

    def advance(self, cursor: Optional[str], processed: int) -> "SyncState":
        return self.model_copy(
            update={
                "cursor": cursor,
                "items_processed": self.items_processed + processed,
                "updated_at": utcnow(),
            }
        )

    def next_batch(self) -> "SyncState":
        return self.model_copy(update={"batch_number": self.batch_number + 1})

    def restart(self) -> "SyncState":
        # Full resync after an expired cursor: history bounds survive, progress does not.
        return self.model_copy(
            update={
                "cursor": None,
                "delta_token": None,
                "sequence": self.sequence + 1,
                "updated_at": utcnow(),
            }
        )


class WatchRegistration(BaseModel):
    subscription_id: str
    expiry: datetime
    provider_resource_id: Optional[str] = None
    secret: Optional[str] = None


class Channel(BaseModel):
    id: str
    title: str


class SyncOptions(BaseModel):
    resource_id: str
    time_min: Optional[datetime] = None
    time_max: Optional[datetime] = None


class Contact(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None
    external_id: Optional[str] = None


class Note(BaseModel):
    key: str
    content: Optional[str] = None
    content_type: Optional[str] = None
    created: Optional[datetime] = None
    author: Optional[Contact] = None


class ScheduleOccurrence(BaseModel):
    occurrence: Union[datetime, str]
    start: Optional[Union[datetime, str]] = None
    end: Optional[Union[datetime, str]] = None
    archived: Optional[bool] = None
    unread: Optional[bool] = None
    tags: Optional[Dict[str, List[Contact]]] = None


class CanonicalActivity(BaseModel):
    """Destination-format record, upserted by ``source_key``.

    Field presence is meaningful: a field that was never set is left out of
    the payload so the destination keeps its current value. ``notes=None``
    (unset) leaves existing notes alone while ``notes=[]`` clears them.
    """

    source_key: str
    type: str
    title: Optional[str] = None
    created: Optional[datetime] = None
    author: Optional[Contact] = None
    assignee: Optional[Contact] = None
    done: Optional[bool] = None
    preview: Optional[str] = None
    url: Optional[str] = None
    start: Optional[Union[datetime, str]] = None
    end: Optional[Union[datetime, str]] = None
    recurrence: Optional[str] = None
    notes: Optional[List[Note]] = None
    tags: Optional[Dict[str, List[Contact]]] = None
    occurrences: Optional[List[ScheduleOccurrence]] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    unread: Optional[bool] = None
    archived: Optional[bool] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class EventKind(str, Enum):
    CHANGED_SIGNAL = "changed_signal"
    ITEM_CHANGED = "item_changed"
    COMMENT_ADDED = "comment_added"
    ITEM_DELETED = "item_deleted"


@dataclass
class WebhookEvent:
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchPage:
    items: List[Any]
    cursor: Optional[str] = None
    has_more: bool = False
    delta_token: Optional[str] = None


class ResourceState(str, Enum):
    DISABLED = "disabled"
    SYNCING = "syncing"
    IDLE = "idle"


class ResourceStatus(BaseModel):
    state: ResourceState
    batch_number: Optional[int] = None
    items_processed: Optional[int] = None
    initial_sync: Optional[bool] = None


__all__ = [
    "BatchPage",
    "CanonicalActivity",
    "Channel",
    "Contact",
    "EventKind",
    "Note",
    "ResourceState",
    "ResourceStatus",
    "ScheduleOccurrence",
    "SyncOptions",
    "SyncState",
    "WatchRegistration",
    "WebhookEvent",
    "WebhookReply",
    "WebhookRequest",
]
