"""Naming for upsert keys and per-resource state keys.

Source keys are the destination's idempotency key, so they are built only
from identifiers the provider never changes (gids, numeric ids, event ids),
never from titles, slugs or repository names.
"""

from __future__ import annotations

from typing import Tuple, Union

SYNC_ENABLED = "sync_enabled_"
SYNC_STATE = "sync_state_"
WEBHOOK_ID = "webhook_id_"
WEBHOOK_SECRET = "webhook_secret_"
WEBHOOK_URL = "webhook_url_"
WATCH = "watch_"
WATCH_RENEWAL_TASK = "watch_renewal_task_"
LAST_DELTA_TOKEN = "last_sync_token_"
ITEM_CALLBACK = "item_callback_"
DISABLE_CALLBACK = "disable_callback_"

# Everything stop_sync clears for a resource.
RESOURCE_STATE_PREFIXES: Tuple[str, ...] = (
    SYNC_ENABLED,
    SYNC_STATE,
    WEBHOOK_ID,
    WEBHOOK_SECRET,
    WEBHOOK_URL,
    WATCH,
    WATCH_RENEWAL_TASK,
    LAST_DELTA_TOKEN,
)

DESCRIPTION_NOTE = "description"

IdPart = Union[str, int]


def resource_key(prefix: str, resource_id: str) -> str:
    return f"{prefix}{resource_id}"


def source_key(provider: str, kind: str, *ids: IdPart) -> str:
    if not ids:
        raise ValueError("source_key needs at least one immutable identifier")
    parts = [provider, kind]
    for value in ids:
        text = str(value).strip()
        if not text:
            raise ValueError(f"Empty identifier in source key for {provider}:{kind}")
        parts.append(text)
    return ":".join(parts)


def note_key(kind: str, provider_id: IdPart) -> str:
    text = str(provider_id).strip()
    if not text:
        raise ValueError(f"Empty identifier in note key for {kind}")
    return f"{kind}-{text}"
