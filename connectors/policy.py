from __future__ import annotations

from connectors.models import CanonicalActivity

_USER_STATE_FIELDS = {"unread", "archived"}


def apply_sync_policy(activity: CanonicalActivity, initial_sync: bool) -> CanonicalActivity:
    """Apply the read/archive defaults every connector shares.

    The initial pass marks history as read and unarchives it (a fresh
    connection). Incremental runs drop both fields entirely so whatever the
    user has since chosen is preserved by the destination.
    """
    if initial_sync:
        return activity.model_copy(update={"unread": False, "archived": False})
    data = activity.model_dump(exclude_unset=True, exclude=_USER_STATE_FIELDS)
    return CanonicalActivity.model_validate(data)


def skip_deleted(deleted: bool, initial_sync: bool) -> bool:
    # Something already gone before the first pass was never seen by the user.
    return deleted and initial_sync


def with_sync_meta(activity: CanonicalActivity, provider: str, resource_id: str) -> CanonicalActivity:
    meta = {**activity.meta, "sync_provider": provider, "syncable_id": resource_id}
    return activity.model_copy(update={"meta": meta})
