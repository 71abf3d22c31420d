from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

import pytest
from apscheduler.jobstores.base import JobLookupError

from apps.workers.host import SyncHost
from connectors import keys
from connectors.base import SyncSource
from connectors.models import (
    BatchPage,
    CanonicalActivity,
    Channel,
    EventKind,
    SyncState,
    WatchRegistration,
    WebhookEvent,
    WebhookRequest,
)
from connectors.signatures import hmac_sha256_hex, verify_hmac_sha256
from core.errors import CursorExpiredError, ProviderError, RateLimitedError
from core.runtime.context import Runtime, build_runtime

PUBLIC_BASE_URL = "https://sync.example.com"


class FakeKV:
    """In-memory stand-in for the Valkey client with the same JSON semantics."""

    def __init__(self) -> None:
        self.data: Dict[str, Any] = {}
        self.queues: Dict[str, List[Any]] = {}

    async def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self.data[key] = json.loads(json.dumps(value))

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self.data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(key for key in self.data if key.startswith(prefix))

    async def enqueue(self, queue: str, payload: Any) -> None:
        self.queues.setdefault(queue, []).append(json.loads(json.dumps(payload)))

    async def ping(self) -> bool:
        return True


@dataclass
class FakeJob:
    id: str
    func: Callable[..., Any]
    args: List[Any]
    run_date: datetime
    kwargs: Dict[str, Any] = field(default_factory=dict)


class FakeScheduler:
    """Records date jobs and runs the due ones on demand."""

    def __init__(self) -> None:
        self.jobs: Dict[str, FakeJob] = {}

    def add_job(self, func, trigger=None, run_date=None, args=None, id=None, **kwargs):
        job = FakeJob(id=id, func=func, args=list(args or []), run_date=run_date, kwargs=kwargs)
        self.jobs[id] = job
        return job

    def get_job(self, job_id: str) -> Optional[FakeJob]:
        return self.jobs.get(job_id)

    def remove_job(self, job_id: str) -> None:
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def due(self) -> List[FakeJob]:
        now = datetime.now(timezone.utc)
        return [job for job in self.jobs.values() if job.run_date <= now]

    async def drain(self, max_rounds: int = 100) -> int:
        executed = 0
        for _ in range(max_rounds):
            due = self.due()
            if not due:
                break
            for job in due:
                del self.jobs[job.id]
                await job.func(*job.args)
                executed += 1
        return executed


class ListSource(SyncSource):
    """A provider backed by a Python list, paginated by offset."""

    name = "fake"
    provider = "fake"

    def __init__(self, runtime: Runtime, items: Optional[List[Dict[str, Any]]] = None, **kwargs: Any) -> None:
        super().__init__(runtime, **kwargs)
        self.items = items or []
        self.expire_cursor_once = False
        self.fail_remote_delete = False
        self.fail_create_watch = False
        # Item ids whose next transform hits a provider rate limit, once each.
        self.throttled: Set[str] = set()
        self.fetches: List[SyncState] = []
        self.registered: List[str] = []
        self.deleted_remote: List[str] = []
        self.watches_created: List[WatchRegistration] = []
        self.watches_stopped: List[WatchRegistration] = []
        self.next_watch_expiry: Optional[datetime] = None

    async def get_channels(self, token: str) -> List[Channel]:
        return [Channel(id="r1", title="Resource one")]

    async def fetch_page(self, resource_id: str, state: SyncState) -> BatchPage:
        self.fetches.append(state)
        if self.expire_cursor_once and state.cursor:
            self.expire_cursor_once = False
            raise CursorExpiredError(provider=self.provider)
        offset = int(state.cursor or 0)
        chunk = self.items[offset : offset + self.page_size]
        next_offset = offset + len(chunk)
        has_more = next_offset < len(self.items)
        return BatchPage(
            items=chunk,
            cursor=str(next_offset) if has_more else None,
            has_more=has_more,
            delta_token=None if has_more else "delta-1",
        )

    async def transform(self, item: Any, resource_id: str, state: SyncState) -> Optional[CanonicalActivity]:
        if item.get("broken"):
            raise ValueError("malformed item")
        if item.get("skip"):
            return None
        if item["id"] in self.throttled:
            self.throttled.discard(item["id"])
            raise RateLimitedError("slow down", provider=self.provider)
        return CanonicalActivity(
            source_key=keys.source_key("fake", "item", item["id"]),
            type="task",
            title=item.get("title", f"Item {item['id']}"),
        )

    async def register_webhook(self, resource_id: str, url: str) -> None:
        self.registered.append(url)
        await self.set(keys.resource_key(keys.WEBHOOK_ID, resource_id), "hook-1")
        await self.set(keys.resource_key(keys.WEBHOOK_SECRET, resource_id), "s3cret")

    async def delete_remote_webhook(self, resource_id: str) -> None:
        self.deleted_remote.append(resource_id)
        if self.fail_remote_delete:
            raise ProviderError("remote delete failed", provider=self.provider, status=500)

    async def verify_webhook(self, request: WebhookRequest, resource_id: str) -> bool:
        secret = await self.get(keys.resource_key(keys.WEBHOOK_SECRET, resource_id))
        return verify_hmac_sha256(secret, request.raw_body, request.header("x-signature"))

    def classify_webhook(self, request: WebhookRequest) -> List[WebhookEvent]:
        body = request.body or {}
        if body.get("type") == "changed":
            return [WebhookEvent(EventKind.CHANGED_SIGNAL)]
        if body.get("type") == "item":
            return [WebhookEvent(EventKind.ITEM_CHANGED, body)]
        if body.get("type") == "items":
            return [WebhookEvent(EventKind.ITEM_CHANGED, entry) for entry in body["items"]]
        return []

    async def handle_webhook_event(self, event: WebhookEvent, resource_id: str) -> Optional[CanonicalActivity]:
        return CanonicalActivity(
            source_key=keys.source_key("fake", "item", event.payload["id"]),
            type="task",
            title=event.payload["title"],
        )

    async def create_watch(self, resource_id: str, url: str) -> WatchRegistration:
        if self.fail_create_watch:
            raise ProviderError("watch refused", provider=self.provider, status=500)
        watch = WatchRegistration(
            subscription_id=f"watch-{len(self.watches_created) + 1}",
            expiry=self.next_watch_expiry or datetime.now(timezone.utc),
            secret="watch-secret",
        )
        self.watches_created.append(watch)
        return watch

    async def stop_watch(self, resource_id: str, watch: WatchRegistration) -> None:
        self.watches_stopped.append(watch)


def signed_request(body: Dict[str, Any], secret: str = "s3cret", header: str = "x-signature", prefix: str = "") -> Dict[str, Any]:
    raw = json.dumps(body)
    return WebhookRequest(
        headers={header: prefix + hmac_sha256_hex(secret, raw)},
        body=body,
        raw_body=raw,
    ).model_dump(mode="json")


@pytest.fixture
def kv() -> FakeKV:
    return FakeKV()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def runtime(kv: FakeKV, scheduler: FakeScheduler) -> Runtime:
    rt = build_runtime(scheduler, kv=kv, base_url=PUBLIC_BASE_URL)
    rt.tasks.bind()
    return rt


@pytest.fixture
def host(runtime: Runtime) -> SyncHost:
    return SyncHost(runtime)


@pytest.fixture
def make_source(runtime: Runtime, host: SyncHost):
    def _make(items: Optional[List[Dict[str, Any]]] = None) -> ListSource:
        return ListSource(runtime, items=items, on_item=host.on_item, on_disabled=host.on_channel_disabled)

    return _make
