from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from core.cache.valkey_client import valkey_client
from core.runtime.callbacks import CallbackRegistry
from core.runtime.integrations import Integrations
from core.runtime.tasks import TaskScheduler
from core.runtime.webhooks import WebhookGateway


@dataclass
class Runtime:
    """The collaborators every sync source talks to."""

    kv: Any
    callbacks: CallbackRegistry
    tasks: TaskScheduler
    webhooks: WebhookGateway
    integrations: Integrations


def build_runtime(scheduler: Any, kv: Any = None, base_url: Optional[str] = None) -> Runtime:
    kv = kv or valkey_client
    callbacks = CallbackRegistry(kv)
    return Runtime(
        kv=kv,
        callbacks=callbacks,
        tasks=TaskScheduler(callbacks, scheduler),
        webhooks=WebhookGateway(callbacks, kv, base_url=base_url),
        integrations=Integrations(kv),
    )
