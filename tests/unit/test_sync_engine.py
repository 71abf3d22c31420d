from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import PUBLIC_BASE_URL, ListSource, signed_request
from connectors import keys
from connectors.models import Channel, ResourceState, SyncOptions, SyncState, WatchRegistration
from core.errors import CallbackMissingError, SyncStateMissingError

CHANNEL = Channel(id="r1", title="Resource one")
QUEUE = "ingest:activities"


def _items(count: int):
    return [{"id": str(index)} for index in range(count)]


def _state_key(resource_id: str = "r1") -> str:
    return f"connector:fake:default:{keys.SYNC_STATE}{resource_id}"


def _upserts(kv):
    return [job for job in kv.queues.get(QUEUE, []) if job["op"] == "upsert"]


@pytest.mark.asyncio
async def test_initial_sync_runs_in_batches_until_exhausted(make_source, kv, scheduler):
    source = make_source(_items(120))
    await source.on_channel_enabled(CHANNEL)

    executed = await scheduler.drain()

    assert executed == 3
    assert [state.batch_number for state in source.fetches] == [1, 2, 3]
    upserts = _upserts(kv)
    assert len(upserts) == 120
    assert {job["channel_id"] for job in upserts} == {"r1"}
    first = upserts[0]["activity"]
    assert first["source_key"] == "fake:item:0"
    assert first["unread"] is False
    assert first["archived"] is False
    assert first["meta"] == {"sync_provider": "fake", "syncable_id": "r1"}
    assert _state_key() not in kv.data
    assert await source.get(keys.resource_key(keys.LAST_DELTA_TOKEN, "r1")) == "delta-1"


@pytest.mark.asyncio
async def test_sync_batch_returns_progress_and_clears_state_on_last_page(make_source, kv, scheduler):
    source = make_source(_items(120))
    await source.on_channel_enabled(CHANNEL)
    scheduler.jobs.clear()

    first = await source.sync_batch("r1")
    second = await source.sync_batch("r1")
    third = await source.sync_batch("r1")

    assert (first.batch_number, first.items_processed) == (1, 50)
    assert (second.batch_number, second.items_processed) == (2, 100)
    assert (third.batch_number, third.items_processed) == (3, 120)
    assert _state_key() not in kv.data
    # Two continuations were queued, none after the last page.
    assert len(scheduler.jobs) == 2


@pytest.mark.asyncio
async def test_expired_cursor_restarts_from_scratch_keeping_bounds(make_source, kv, scheduler, runtime, host):
    source = make_source(_items(120))
    source.expire_cursor_once = True
    time_min = datetime(2024, 1, 1, tzinfo=timezone.utc)
    await source.start_sync(SyncOptions(resource_id="r1", time_min=time_min), host.on_item, "r1")

    await scheduler.drain()

    expired, restarted = source.fetches[1], source.fetches[2]
    assert expired.cursor == "50"
    assert restarted.cursor is None
    assert restarted.delta_token is None
    assert restarted.sequence == expired.sequence + 1
    assert restarted.min == time_min
    assert all(state.min == time_min for state in source.fetches)
    # 50 items from the first page, then the whole resource again.
    assert len(_upserts(kv)) == 170
    assert _state_key() not in kv.data


@pytest.mark.asyncio
async def test_failing_items_are_skipped_and_the_batch_continues(make_source, kv, scheduler):
    items = _items(5)
    items[1]["broken"] = True
    items[3]["skip"] = True
    source = make_source(items)
    await source.on_channel_enabled(CHANNEL)

    await scheduler.drain()

    keys_seen = [job["activity"]["source_key"] for job in _upserts(kv)]
    assert keys_seen == ["fake:item:0", "fake:item:2", "fake:item:4"]
    assert _state_key() not in kv.data


@pytest.mark.asyncio
async def test_rate_limited_item_leaves_the_batch_for_retry(make_source, kv, scheduler):
    source = make_source(_items(4))
    source.throttled = {"1"}
    await source.on_channel_enabled(CHANNEL)

    await scheduler.drain()

    assert [job["activity"]["source_key"] for job in _upserts(kv)] == ["fake:item:0"]
    state = SyncState.model_validate(kv.data[_state_key()])
    assert (state.batch_number, state.cursor) == (1, None)
    assert len(scheduler.jobs) == 1
    retry = next(iter(scheduler.jobs.values()))
    assert retry.args[1] == 1

    retry.run_date = datetime.now(timezone.utc)
    await scheduler.drain()

    # The retry starts from the same cursor; item 0 is upserted again under its key.
    delivered = [job["activity"]["source_key"] for job in _upserts(kv)]
    assert delivered == ["fake:item:0", "fake:item:0", "fake:item:1", "fake:item:2", "fake:item:3"]
    assert _state_key() not in kv.data


@pytest.mark.asyncio
async def test_replaying_a_page_upserts_the_same_keys(make_source, kv, scheduler):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    await scheduler.drain()
    first = [job["activity"]["source_key"] for job in _upserts(kv)]
    kv.queues.clear()

    await source.set(keys.resource_key(keys.SYNC_STATE, "r1"), SyncState())
    await source.sync_batch("r1")

    second = [job["activity"]["source_key"] for job in _upserts(kv)]
    assert second == first
    assert len(set(second)) == 3


@pytest.mark.asyncio
async def test_malformed_webhook_event_does_not_block_the_rest(make_source, kv, scheduler):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    await scheduler.drain()
    kv.queues.clear()
    body = {"type": "items", "items": [{"id": "7"}, {"id": "8", "title": "Still delivered"}]}

    result = await source.on_webhook(signed_request(body), "r1")

    assert result is None
    upserts = _upserts(kv)
    assert [job["activity"]["source_key"] for job in upserts] == ["fake:item:8"]
    assert upserts[0]["activity"]["title"] == "Still delivered"


@pytest.mark.asyncio
async def test_sync_batch_without_state_raises(make_source):
    source = make_source(_items(3))
    with pytest.raises(SyncStateMissingError):
        await source.sync_batch("r1")


@pytest.mark.asyncio
async def test_sync_batch_without_item_callback_raises(make_source):
    source = make_source(_items(3))
    await source.set(keys.resource_key(keys.SYNC_STATE, "r1"), SyncState())
    with pytest.raises(CallbackMissingError):
        await source.sync_batch("r1")


@pytest.mark.asyncio
async def test_disable_cleans_up_every_resource_key(make_source, kv, scheduler):
    source = make_source(_items(120))
    await source.on_channel_enabled(CHANNEL)
    assert len(source.registered) == 1
    assert source.registered[0].startswith(PUBLIC_BASE_URL + "/webhooks/")

    await source.on_channel_disabled(CHANNEL)

    assert source.deleted_remote == ["r1"]
    assert await kv.keys("connector:fake:default:") == []
    assert await kv.keys("webhook:") == []
    archive = [job for job in kv.queues[QUEUE] if job["op"] == "archive"]
    assert archive == [{"op": "archive", "channel_id": "r1"}]
    assert (await source.status("r1")).state is ResourceState.DISABLED


@pytest.mark.asyncio
async def test_pending_batch_after_disable_delivers_nothing(make_source, kv, scheduler):
    source = make_source(_items(120))
    await source.on_channel_enabled(CHANNEL)
    await source.on_channel_disabled(CHANNEL)

    await scheduler.drain()

    assert _upserts(kv) == []
    assert _state_key() not in kv.data


@pytest.mark.asyncio
async def test_remote_delete_failure_does_not_block_local_cleanup(make_source, kv):
    source = make_source(_items(3))
    source.fail_remote_delete = True
    await source.on_channel_enabled(CHANNEL)

    await source.on_channel_disabled(CHANNEL)

    assert await kv.keys("connector:fake:default:") == []


@pytest.mark.asyncio
async def test_reenable_replaces_item_callback(make_source, kv):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    old_token = await source.get(keys.resource_key(keys.ITEM_CALLBACK, "r1"))

    await source.on_channel_enabled(CHANNEL)

    new_token = await source.get(keys.resource_key(keys.ITEM_CALLBACK, "r1"))
    assert new_token != old_token
    assert f"callback:{old_token}" not in kv.data
    assert f"callback:{new_token}" in kv.data


@pytest.mark.asyncio
async def test_loopback_webhook_url_skips_provider_registration(make_source, runtime):
    runtime.webhooks._base_url = "http://localhost:8000"
    source = make_source(_items(3))

    await source.on_channel_enabled(CHANNEL)

    assert source.registered == []
    assert await source.get(keys.resource_key(keys.WEBHOOK_URL, "r1")).startswith("http://localhost:8000/webhooks/")


@pytest.mark.asyncio
async def test_status_reports_progress(make_source, scheduler):
    source = make_source(_items(120))
    await source.on_channel_enabled(CHANNEL)
    scheduler.jobs.clear()
    await source.sync_batch("r1")

    status = await source.status("r1")

    assert status.state is ResourceState.SYNCING
    assert status.batch_number == 2
    assert status.items_processed == 50
    assert status.initial_sync is True


@pytest.mark.asyncio
async def test_tampered_webhook_is_rejected(make_source, kv, scheduler):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    await scheduler.drain()
    request = signed_request({"type": "changed"})
    request["raw_body"] = request["raw_body"].replace("changed", "changeD")

    result = await source.on_webhook(request, "r1")

    assert result is None
    assert scheduler.jobs == {}
    assert _state_key() not in kv.data


@pytest.mark.asyncio
async def test_change_signal_starts_incremental_sync_without_user_state_fields(make_source, kv, scheduler):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    await scheduler.drain()
    kv.queues.clear()

    await source.on_webhook(signed_request({"type": "changed"}), "r1")

    state = SyncState.model_validate(kv.data[_state_key()])
    assert state.initial_sync is False
    assert state.delta_token == "delta-1"
    await scheduler.drain()
    upserts = _upserts(kv)
    assert len(upserts) == 3
    assert all("unread" not in job["activity"] and "archived" not in job["activity"] for job in upserts)


@pytest.mark.asyncio
async def test_change_signal_coalesces_with_running_sync(make_source, kv, scheduler):
    source = make_source(_items(120))
    await source.on_channel_enabled(CHANNEL)
    pending = len(scheduler.jobs)

    started = await source.start_incremental_sync("r1")

    assert started is False
    assert len(scheduler.jobs) == pending
    assert SyncState.model_validate(kv.data[_state_key()]).initial_sync is True


@pytest.mark.asyncio
async def test_abandoned_sync_state_is_replaced(make_source, kv):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    stale = SyncState(updated_at=datetime.now(timezone.utc) - timedelta(days=2))
    await source.set(keys.resource_key(keys.SYNC_STATE, "r1"), stale)

    started = await source.start_incremental_sync("r1")

    assert started is True
    assert SyncState.model_validate(kv.data[_state_key()]).initial_sync is False


@pytest.mark.asyncio
async def test_rich_webhook_event_upserts_directly(make_source, kv, scheduler):
    source = make_source(_items(3))
    await source.on_channel_enabled(CHANNEL)
    await scheduler.drain()
    kv.queues.clear()

    await source.on_webhook(signed_request({"type": "item", "id": "9", "title": "Renamed"}), "r1")

    upserts = _upserts(kv)
    assert len(upserts) == 1
    activity = upserts[0]["activity"]
    assert activity["source_key"] == "fake:item:9"
    assert activity["title"] == "Renamed"
    assert activity["meta"]["syncable_id"] == "r1"
    assert "notes" not in activity
    assert scheduler.jobs == {}


@pytest.mark.asyncio
async def test_watch_renewal_is_scheduled_before_expiry(make_source, scheduler):
    source = make_source()
    expiry = datetime.now(timezone.utc) + timedelta(days=3)
    watch = WatchRegistration(subscription_id="watch-0", expiry=expiry)
    await source.set(keys.resource_key(keys.WATCH, "r1"), watch)

    await source.schedule_watch_renewal("r1", watch)

    task_id = await source.get(keys.resource_key(keys.WATCH_RENEWAL_TASK, "r1"))
    job = scheduler.get_job(task_id)
    assert job.run_date == expiry - timedelta(hours=24)
    assert source.watches_created == []


@pytest.mark.asyncio
async def test_watch_inside_margin_is_renewed_immediately(make_source):
    source = make_source()
    source.next_watch_expiry = datetime.now(timezone.utc) + timedelta(days=7)
    old = WatchRegistration(subscription_id="watch-0", expiry=datetime.now(timezone.utc) + timedelta(hours=2))
    await source.set(keys.resource_key(keys.WATCH, "r1"), old)

    await source.schedule_watch_renewal("r1", old)

    stored = WatchRegistration.model_validate(await source.get(keys.resource_key(keys.WATCH, "r1")))
    assert stored.subscription_id == "watch-1"
    assert [watch.subscription_id for watch in source.watches_stopped] == ["watch-0"]
    assert await source.get(keys.resource_key(keys.WATCH_RENEWAL_TASK, "r1"))


@pytest.mark.asyncio
async def test_failed_renewal_keeps_the_existing_watch(make_source):
    source = make_source()
    source.fail_create_watch = True
    old = WatchRegistration(subscription_id="watch-0", expiry=datetime.now(timezone.utc) + timedelta(hours=2))
    await source.set(keys.resource_key(keys.WATCH, "r1"), old)

    await source.renew_watch("r1")

    stored = WatchRegistration.model_validate(await source.get(keys.resource_key(keys.WATCH, "r1")))
    assert stored.subscription_id == "watch-0"
    assert source.watches_stopped == []


@pytest.mark.asyncio
async def test_enabled_resources_lists_enabled_channels(make_source):
    source = make_source()
    await source.on_channel_enabled(CHANNEL)
    await source.on_channel_enabled(Channel(id="r2", title="Resource two"))

    assert await source.enabled_resources() == ["r1", "r2"]


def test_source_registers_as_callback_owner(runtime, make_source):
    source = make_source()
    assert runtime.callbacks.owner("fake:default") is source
    assert isinstance(source, ListSource)
