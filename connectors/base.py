"""Batched incremental sync shared by every connector.

A source owns, per resource (calendar, project, repository):

* a batch loop that fetches one provider page per scheduled invocation and
  re-enqueues itself until the provider reports no more pages;
* webhook ingestion that verifies, classifies and either upserts a partial
  activity directly or kicks off an incremental run;
* the enable/disable lifecycle and the per-resource keys it owns.

Concurrent invocations for the same resource are not serialized: every run
read-modify-writes ``sync_state_<id>`` and the last writer wins.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from connectors import keys
from connectors.models import (
    BatchPage,
    CanonicalActivity,
    Channel,
    EventKind,
    ResourceState,
    ResourceStatus,
    SyncOptions,
    SyncState,
    WatchRegistration,
    WebhookEvent,
    WebhookReply,
    WebhookRequest,
    utcnow,
)
from connectors.policy import apply_sync_policy, with_sync_meta
from connectors.signatures import is_loopback_url
from connectors.state_store import StateStore
from core.config import settings
from core.errors import (
    AuthorizationError,
    CallbackMissingError,
    CallbackNotFoundError,
    CursorExpiredError,
    ProviderError,
    RateLimitedError,
    SyncStateMissingError,
    TransientProviderError,
)
from core.logging import bind_sync_context, log_event
from core.metrics import SYNC_BATCHES, SYNC_CURSOR_RESETS, SYNC_ITEMS, WEBHOOKS
from core.runtime.callbacks import Callback, replayable
from core.runtime.context import Runtime

logger = logging.getLogger(__name__)


class SyncSource(abc.ABC):
    name: str
    provider: str

    def __init__(
        self,
        runtime: Runtime,
        instance_id: str = "default",
        on_item: Optional[Callable[..., Any]] = None,
        on_disabled: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.runtime = runtime
        self.instance_id = instance_id
        self.owner_id = f"{self.name}:{instance_id}"
        self.store = StateStore(runtime.kv, self.name, instance_id)
        self.page_size = settings.sync_page_size
        self._on_item = on_item
        self._on_disabled = on_disabled
        runtime.callbacks.register_owner(self)

    # ---------- provider hooks ----------

    @abc.abstractmethod
    async def get_channels(self, token: str) -> List[Channel]:
        """List the resources an authorized account can sync."""

    @abc.abstractmethod
    async def fetch_page(self, resource_id: str, state: SyncState) -> BatchPage:
        """Fetch exactly one page. Raise CursorExpiredError when the cursor is no longer accepted."""

    @abc.abstractmethod
    async def transform(self, item: Any, resource_id: str, state: SyncState) -> Optional[CanonicalActivity]:
        """Map one provider item; ``None`` skips it."""

    @abc.abstractmethod
    async def verify_webhook(self, request: WebhookRequest, resource_id: str) -> bool:
        ...

    @abc.abstractmethod
    def classify_webhook(self, request: WebhookRequest) -> List[WebhookEvent]:
        ...

    async def handle_webhook_event(self, event: WebhookEvent, resource_id: str) -> Optional[CanonicalActivity]:
        return None

    async def handshake(self, request: WebhookRequest, resource_id: str) -> Optional[WebhookReply]:
        return None

    async def on_webhook_verified(self, request: WebhookRequest, resource_id: str) -> None:
        return None

    async def register_webhook(self, resource_id: str, url: str) -> None:
        return None

    async def delete_remote_webhook(self, resource_id: str) -> None:
        return None

    async def create_watch(self, resource_id: str, url: str) -> WatchRegistration:
        raise NotImplementedError(f"{self.name} does not use expiring watches")

    async def stop_watch(self, resource_id: str, watch: WatchRegistration) -> None:
        return None

    async def on_activity_updated(self, activity: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        """Push a user edit of a synced activity back to the provider.

        Returns whether anything was written.
        """
        return False

    def default_time_min(self) -> Optional[datetime]:
        return None

    async def incremental_state(self, resource_id: str) -> SyncState:
        delta_token = await self.get(keys.resource_key(keys.LAST_DELTA_TOKEN, resource_id))
        lookback = None if delta_token else utcnow() - timedelta(days=settings.incremental_lookback_days)
        return SyncState(initial_sync=False, delta_token=delta_token, min=lookback)

    async def on_sync_complete(self, resource_id: str, state: SyncState, page: BatchPage) -> None:
        if page.delta_token:
            await self.set(keys.resource_key(keys.LAST_DELTA_TOKEN, resource_id), page.delta_token)

    def item_id(self, item: Any) -> Optional[str]:
        if isinstance(item, dict):
            return item.get("id") or item.get("gid")
        return getattr(item, "id", None) or getattr(item, "gid", None)

    # ---------- store and runtime helpers ----------

    async def get(self, key: str) -> Any:
        return await self.store.get(key)

    async def set(self, key: str, value: Any) -> None:
        await self.store.set(key, value)

    async def clear(self, key: str) -> None:
        await self.store.clear(key)

    async def callback(self, fn: Callable[..., Any], *args: Any) -> Callback:
        return await self.runtime.callbacks.create_from_parent(fn, *args)

    async def run_task(self, token: Callback, run_at: Optional[datetime] = None) -> str:
        return await self.runtime.tasks.run_task(token, run_at=run_at)

    async def access_token(self, resource_id: str) -> str:
        token = await self.runtime.integrations.get_token(self.provider, resource_id)
        if not token:
            raise AuthorizationError(f"No {self.provider} authentication token available", provider=self.provider)
        return token

    async def _replace_callback(self, prefix: str, resource_id: str, fn: Callable[..., Any], *args: Any) -> None:
        key = keys.resource_key(prefix, resource_id)
        previous = await self.get(key)
        if previous:
            await self.runtime.callbacks.delete(previous)
        await self.set(key, await self.callback(fn, *args))

    # ---------- lifecycle ----------

    async def on_channel_enabled(self, channel: Channel) -> None:
        if self._on_item is None:
            raise RuntimeError(f"{self.name} has no item handler to deliver activities to")
        resource_id = channel.id
        bind_sync_context(self.name, resource_id)
        log_event(logger, "channel.enabling", channel=channel.title)
        # Everything sync_batch reads back must exist before the first batch is queued.
        await self.set(keys.resource_key(keys.SYNC_ENABLED, resource_id), True)
        await self._replace_callback(keys.ITEM_CALLBACK, resource_id, self._on_item, resource_id)
        if self._on_disabled is not None:
            await self._replace_callback(
                keys.DISABLE_CALLBACK, resource_id, self._on_disabled, channel.model_dump(mode="json")
            )
        await self.setup_webhook(resource_id)
        await self.start_batch_sync(resource_id)

    async def on_channel_disabled(self, channel: Channel) -> None:
        resource_id = channel.id
        bind_sync_context(self.name, resource_id)
        log_event(logger, "channel.disabling", channel=channel.title)
        await self.stop_sync(resource_id)
        disable_key = keys.resource_key(keys.DISABLE_CALLBACK, resource_id)
        token = await self.get(disable_key)
        if token:
            try:
                await self.runtime.callbacks.run(token)
            except Exception:
                logger.exception("Disable callback failed; continuing cleanup")
            await self.runtime.callbacks.delete(token)
            await self.clear(disable_key)
        log_event(logger, "channel.disabled")

    async def start_sync(self, options: SyncOptions, callback: Callable[..., Any], *extra_args: Any) -> None:
        resource_id = options.resource_id
        bind_sync_context(self.name, resource_id)
        await self._replace_callback(keys.ITEM_CALLBACK, resource_id, callback, *extra_args)
        await self.setup_webhook(resource_id)
        await self.start_batch_sync(resource_id, time_min=options.time_min, time_max=options.time_max)

    async def stop_sync(self, resource_id: str) -> None:
        renewal_task = await self.get(keys.resource_key(keys.WATCH_RENEWAL_TASK, resource_id))
        if renewal_task:
            await self.runtime.tasks.cancel_task(renewal_task)

        try:
            await self.delete_remote_webhook(resource_id)
        except Exception:
            # Local cleanup must still happen or the resource can never be disabled.
            logger.warning("Failed to delete remote webhook", exc_info=True)

        url = await self.get(keys.resource_key(keys.WEBHOOK_URL, resource_id))
        if url:
            await self.runtime.webhooks.delete_webhook(url)

        item_key = keys.resource_key(keys.ITEM_CALLBACK, resource_id)
        token = await self.get(item_key)
        if token:
            await self.runtime.callbacks.delete(token)
            await self.clear(item_key)

        for prefix in keys.RESOURCE_STATE_PREFIXES:
            await self.clear(keys.resource_key(prefix, resource_id))
        log_event(logger, "sync.stopped")

    async def status(self, resource_id: str) -> ResourceStatus:
        if not await self.get(keys.resource_key(keys.SYNC_ENABLED, resource_id)):
            return ResourceStatus(state=ResourceState.DISABLED)
        raw = await self.get(keys.resource_key(keys.SYNC_STATE, resource_id))
        if raw is None:
            return ResourceStatus(state=ResourceState.IDLE)
        state = SyncState.model_validate(raw)
        return ResourceStatus(
            state=ResourceState.SYNCING,
            batch_number=state.batch_number,
            items_processed=state.items_processed,
            initial_sync=state.initial_sync,
        )

    async def enabled_resources(self) -> List[str]:
        return [key[len(keys.SYNC_ENABLED):] for key in await self.store.list(keys.SYNC_ENABLED)]

    # ---------- batch loop ----------

    async def start_batch_sync(
        self,
        resource_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> None:
        state = SyncState(initial_sync=True, min=time_min or self.default_time_min(), max=time_max)
        await self.set(keys.resource_key(keys.SYNC_STATE, resource_id), state)
        await self.run_task(await self.callback(self.sync_batch, resource_id))
        log_event(logger, "sync.started", initial_sync=True)

    async def start_incremental_sync(self, resource_id: str) -> bool:
        state_key = keys.resource_key(keys.SYNC_STATE, resource_id)
        raw = await self.get(state_key)
        if raw is not None:
            current = SyncState.model_validate(raw)
            age = (utcnow() - current.updated_at).total_seconds()
            if age < settings.sync_state_stale_seconds:
                log_event(logger, "sync.incremental.coalesced", batch=current.batch_number)
                return False
            logger.warning("Replacing abandoned sync state", extra={"age_seconds": age})
        await self.set(state_key, await self.incremental_state(resource_id))
        await self.run_task(await self.callback(self.sync_batch, resource_id))
        log_event(logger, "sync.started", initial_sync=False)
        return True

    @replayable
    async def sync_batch(self, resource_id: str) -> SyncState:
        bind_sync_context(self.name, resource_id)
        state_key = keys.resource_key(keys.SYNC_STATE, resource_id)
        raw = await self.get(state_key)
        if raw is None:
            raise SyncStateMissingError(resource_id)
        state = SyncState.model_validate(raw)
        item_callback = await self.get(keys.resource_key(keys.ITEM_CALLBACK, resource_id))
        if not item_callback:
            raise CallbackMissingError(resource_id)

        log_event(logger, "sync.batch.start", batch=state.batch_number, initial_sync=state.initial_sync)
        try:
            page = await self.fetch_page(resource_id, state)
        except CursorExpiredError:
            SYNC_CURSOR_RESETS.labels(self.name).inc()
            log_event(logger, "sync.cursor.expired", sequence=state.sequence)
            state = state.restart()
            await self.set(state_key, state)
            page = await self.fetch_page(resource_id, state)

        await self._deliver_page(page.items, resource_id, state, item_callback)
        state = state.advance(page.cursor, len(page.items))
        SYNC_BATCHES.labels(self.name).inc()

        if not await self.get(keys.resource_key(keys.ITEM_CALLBACK, resource_id)):
            # Disabled while this batch ran; do not resurrect state that stop_sync cleared.
            log_event(logger, "sync.batch.cancelled", batch=state.batch_number)
            return state

        if page.has_more:
            await self.set(state_key, state.next_batch())
            await self.run_task(await self.callback(self.sync_batch, resource_id))
            log_event(logger, "sync.batch.complete", batch=state.batch_number, items=state.items_processed)
        else:
            await self.on_sync_complete(resource_id, state, page)
            await self.clear(state_key)
            log_event(logger, "sync.complete", batches=state.batch_number, items=state.items_processed)
        return state

    async def _deliver_page(self, items: List[Any], resource_id: str, state: SyncState, token: Callback) -> None:
        for item in items:
            try:
                activity = await self.transform(item, resource_id, state)
                if activity is None:
                    SYNC_ITEMS.labels(self.name, "skipped").inc()
                    continue
                activity = apply_sync_policy(activity, state.initial_sync)
                await self.emit(token, activity, resource_id)
                SYNC_ITEMS.labels(self.name, "delivered").inc()
            except CallbackNotFoundError as exc:
                raise CallbackMissingError(resource_id) from exc
            except (RateLimitedError, TransientProviderError, AuthorizationError):
                # The whole batch is retried from the same cursor.
                raise
            except Exception:
                # One malformed item must not block the rest of the resource.
                SYNC_ITEMS.labels(self.name, "failed").inc()
                logger.exception("Failed to sync item", extra={"item_id": self.item_id(item)})

    async def emit(self, token: Callback, activity: CanonicalActivity, resource_id: str) -> None:
        activity = with_sync_meta(activity, self.provider, resource_id)
        await self.runtime.callbacks.run(token, activity.to_payload())

    # ---------- webhooks ----------

    async def setup_webhook(self, resource_id: str) -> None:
        url = await self.runtime.webhooks.create_webhook(self.on_webhook, resource_id)
        await self.set(keys.resource_key(keys.WEBHOOK_URL, resource_id), url)
        if is_loopback_url(url):
            log_event(logger, "webhook.skipped_loopback", url=url)
            return
        try:
            await self.register_webhook(resource_id, url)
        except ProviderError:
            logger.exception("Failed to register webhook; real-time updates will not work")

    @replayable
    async def on_webhook(self, request: Dict[str, Any], resource_id: str) -> Optional[Dict[str, Any]]:
        bind_sync_context(self.name, resource_id)
        webhook = WebhookRequest.model_validate(request)

        reply = await self.handshake(webhook, resource_id)
        if reply is not None:
            WEBHOOKS.labels(self.name, "handshake").inc()
            return reply.model_dump()

        try:
            verified = await self.verify_webhook(webhook, resource_id)
        except Exception:
            logger.warning("Webhook verification raised", exc_info=True)
            verified = False
        if not verified:
            WEBHOOKS.labels(self.name, "rejected").inc()
            logger.warning("Webhook verification failed")
            return None
        WEBHOOKS.labels(self.name, "accepted").inc()
        await self.on_webhook_verified(webhook, resource_id)

        events = self.classify_webhook(webhook)
        if any(event.kind is EventKind.CHANGED_SIGNAL for event in events):
            await self.start_incremental_sync(resource_id)

        rich = [event for event in events if event.kind is not EventKind.CHANGED_SIGNAL]
        if not rich:
            return None
        token = await self.get(keys.resource_key(keys.ITEM_CALLBACK, resource_id))
        if not token:
            logger.warning("No item callback for resource; dropping webhook events")
            return None
        for event in rich:
            try:
                activity = await self.handle_webhook_event(event, resource_id)
            except Exception:
                WEBHOOKS.labels(self.name, "failed").inc()
                logger.warning("Failed to process webhook event", exc_info=True, extra={"kind": event.kind.value})
                continue
            if activity is not None:
                await self.emit(token, activity, resource_id)
        return None

    # ---------- watch renewal ----------

    async def schedule_watch_renewal(self, resource_id: str, watch: WatchRegistration, allow_immediate: bool = True) -> None:
        renew_at = watch.expiry - timedelta(hours=settings.watch_renewal_margin_hours)
        if renew_at <= utcnow():
            if allow_immediate:
                await self.renew_watch(resource_id)
            else:
                logger.warning("Watch expires inside the renewal margin", extra={"expiry": watch.expiry.isoformat()})
            return
        task_key = keys.resource_key(keys.WATCH_RENEWAL_TASK, resource_id)
        previous = await self.get(task_key)
        if previous:
            await self.runtime.tasks.cancel_task(previous)
        task_id = await self.run_task(await self.callback(self.renew_watch, resource_id), run_at=renew_at)
        await self.set(task_key, task_id)
        log_event(logger, "watch.renewal_scheduled", run_at=renew_at.isoformat())

    @replayable
    async def renew_watch(self, resource_id: str) -> None:
        bind_sync_context(self.name, resource_id)
        watch_key = keys.resource_key(keys.WATCH, resource_id)
        try:
            raw = await self.get(watch_key)
            if raw is None:
                logger.warning("No watch registered; skipping renewal")
                return
            old = WatchRegistration.model_validate(raw)
            url = await self.get(keys.resource_key(keys.WEBHOOK_URL, resource_id))
            if not url:
                url = await self.runtime.webhooks.create_webhook(self.on_webhook, resource_id)
            # Create first: if this fails the old subscription keeps delivering until it expires.
            new = await self.create_watch(resource_id, url)
            await self.set(watch_key, new)
            try:
                await self.stop_watch(resource_id, old)
            except Exception:
                logger.warning("Failed to stop previous watch", exc_info=True)
            await self.schedule_watch_renewal(resource_id, new, allow_immediate=False)
            log_event(logger, "watch.renewed", expiry=new.expiry.isoformat())
        except Exception:
            logger.exception("Failed to renew watch; keeping existing subscription")
