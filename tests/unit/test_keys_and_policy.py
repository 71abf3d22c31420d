from datetime import datetime, timezone

import pytest

from connectors import keys
from connectors.models import CanonicalActivity, Note, SyncState
from connectors.policy import apply_sync_policy, skip_deleted, with_sync_meta


def test_source_key_joins_immutable_ids():
    assert keys.source_key("github", "pr", 123456, 42) == "github:pr:123456:42"
    assert keys.source_key("asana", "task", "1209") == "asana:task:1209"


def test_source_key_rejects_missing_ids():
    with pytest.raises(ValueError):
        keys.source_key("asana", "task")
    with pytest.raises(ValueError):
        keys.source_key("asana", "task", "  ")


def test_note_key_prefixes_kind():
    assert keys.note_key("comment", 991) == "comment-991"
    with pytest.raises(ValueError):
        keys.note_key("story", "")


def test_resource_state_prefixes_cover_lifecycle_keys():
    for prefix in (keys.SYNC_ENABLED, keys.SYNC_STATE, keys.WEBHOOK_URL, keys.WATCH, keys.LAST_DELTA_TOKEN):
        assert prefix in keys.RESOURCE_STATE_PREFIXES


def test_initial_sync_marks_history_read_and_unarchived():
    activity = CanonicalActivity(source_key="fake:item:1", type="task", title="One", archived=True)
    result = apply_sync_policy(activity, initial_sync=True)
    payload = result.to_payload()
    assert payload["unread"] is False
    assert payload["archived"] is False


def test_incremental_sync_omits_user_state_fields():
    activity = CanonicalActivity(
        source_key="fake:item:1",
        type="task",
        title="One",
        unread=True,
        archived=True,
        notes=[Note(key="description", content="body")],
    )
    payload = apply_sync_policy(activity, initial_sync=False).to_payload()
    assert "unread" not in payload
    assert "archived" not in payload
    assert payload["notes"] == [{"key": "description", "content": "body"}]


def test_unset_fields_stay_out_of_payload():
    payload = CanonicalActivity(source_key="fake:item:1", type="task", title="One").to_payload()
    assert payload == {"source_key": "fake:item:1", "type": "task", "title": "One"}


def test_explicit_none_is_kept_to_clear_a_field():
    payload = CanonicalActivity(source_key="fake:item:1", type="task", assignee=None).to_payload()
    assert payload["assignee"] is None


def test_sync_meta_is_merged_into_existing_meta():
    activity = CanonicalActivity(source_key="fake:item:1", type="task", meta={"task_gid": "1"})
    payload = with_sync_meta(activity, "asana", "proj-1").to_payload()
    assert payload["meta"] == {"task_gid": "1", "sync_provider": "asana", "syncable_id": "proj-1"}


def test_deleted_items_are_skipped_only_on_initial_sync():
    assert skip_deleted(True, initial_sync=True) is True
    assert skip_deleted(True, initial_sync=False) is False
    assert skip_deleted(False, initial_sync=True) is False


def test_restart_keeps_window_and_bumps_sequence():
    window_min = datetime(2024, 1, 1, tzinfo=timezone.utc)
    state = SyncState(cursor="abc", delta_token="tok", batch_number=4, items_processed=200, min=window_min)
    restarted = state.restart()
    assert restarted.cursor is None
    assert restarted.delta_token is None
    assert restarted.sequence == 2
    assert restarted.min == window_min
    assert restarted.initial_sync is True


def test_advance_then_next_batch():
    state = SyncState().advance("cursor-2", 50).next_batch()
    assert state.cursor == "cursor-2"
    assert state.items_processed == 50
    assert state.batch_number == 2
