"""Persistent callback tokens.

A token names a (registered owner, replayable method, bound args) triple and
survives process restarts because only JSON is persisted. The set of methods
that can be replayed is closed: a method must be marked with ``@replayable``
and its owner must be registered with the registry under a stable id.
"""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, NewType, Tuple, TypeVar

from core.cache.valkey_client import valkey_client
from core.errors import CallbackNotFoundError

logger = logging.getLogger(__name__)

Callback = NewType("Callback", str)

F = TypeVar("F", bound=Callable[..., Any])

_REPLAYABLE_ATTR = "__replayable__"
_KEY_PREFIX = "callback:"


def replayable(fn: F) -> F:
    setattr(fn, _REPLAYABLE_ATTR, True)
    return fn


def is_replayable(fn: Callable[..., Any]) -> bool:
    return bool(getattr(getattr(fn, "__func__", fn), _REPLAYABLE_ATTR, False))


def _serializable(args: Tuple[Any, ...]) -> List[Any]:
    try:
        return json.loads(json.dumps(list(args)))
    except (TypeError, ValueError) as exc:
        raise TypeError(f"Callback arguments must be JSON-serializable: {exc}") from exc


class CallbackRegistry:
    def __init__(self, kv: Any = None) -> None:
        self._kv = kv or valkey_client
        self._owners: Dict[str, Any] = {}

    def register_owner(self, owner: Any) -> None:
        owner_id = getattr(owner, "owner_id", None)
        if not owner_id:
            raise ValueError(f"{owner!r} has no owner_id")
        self._owners[owner_id] = owner

    def owner(self, owner_id: str) -> Any:
        return self._owners.get(owner_id)

    def describe(self, fn: Callable[..., Any]) -> Tuple[str, str]:
        """Return ``(owner_id, method_name)`` for a bound replayable method."""
        owner = getattr(fn, "__self__", None)
        func = getattr(fn, "__func__", None)
        if owner is None or func is None:
            raise TypeError("Callbacks must be bound methods of a registered owner")
        owner_id = getattr(owner, "owner_id", None)
        if owner_id is None or self._owners.get(owner_id) is not owner:
            raise TypeError(f"{type(owner).__name__} is not registered with the callback registry")
        if not is_replayable(func):
            raise TypeError(f"{func.__qualname__} is not marked @replayable")
        return owner_id, func.__name__

    async def create_from_parent(self, fn: Callable[..., Any], *args: Any) -> Callback:
        owner_id, method = self.describe(fn)
        record = {"owner": owner_id, "method": method, "args": _serializable(args)}
        token = Callback(uuid.uuid4().hex)
        await self._kv.set(f"{_KEY_PREFIX}{token}", record)
        return token

    create = create_from_parent

    async def exists(self, token: Callback) -> bool:
        return await self._kv.get(f"{_KEY_PREFIX}{token}") is not None

    async def run(self, token: Callback, *args: Any) -> Any:
        record = await self._kv.get(f"{_KEY_PREFIX}{token}")
        if not record:
            raise CallbackNotFoundError(token)
        owner = self._owners.get(record["owner"])
        if owner is None:
            raise CallbackNotFoundError(token, f"owner {record['owner']} not registered")
        method = getattr(owner, record["method"], None)
        if method is None or not is_replayable(method):
            raise CallbackNotFoundError(token, f"method {record['method']} is not replayable")
        result = method(*args, *record["args"])
        if inspect.isawaitable(result):
            result = await result
        return result

    async def delete(self, token: Callback) -> None:
        await self._kv.delete(f"{_KEY_PREFIX}{token}")
