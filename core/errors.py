from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync runtime."""


class SyncInvariantError(SyncError):
    """Lifecycle invariant broken mid-run; left for the scheduler to retry."""


class SyncStateMissingError(SyncInvariantError):
    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Sync state not found for resource {resource_id}")
        self.resource_id = resource_id


class CallbackMissingError(SyncInvariantError):
    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Item callback not found for resource {resource_id}; resource was disabled")
        self.resource_id = resource_id


class CallbackNotFoundError(SyncError):
    def __init__(self, token: str, reason: str = "unknown callback") -> None:
        super().__init__(f"{reason}: {token}")
        self.token = token


class WebhookNotFoundError(SyncError):
    def __init__(self, webhook_id: str) -> None:
        super().__init__(f"No webhook registered for {webhook_id}")
        self.webhook_id = webhook_id


class ProviderError(SyncError):
    def __init__(self, message: str, *, provider: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status


class AuthorizationError(ProviderError):
    pass


class RateLimitedError(ProviderError):
    def __init__(self, message: str, *, provider: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message, provider=provider, status=429)
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    pass


class CursorExpiredError(ProviderError):
    """The provider no longer accepts the stored page or delta token; a full resync is required."""

    def __init__(self, message: str = "Cursor expired", *, provider: str) -> None:
        super().__init__(message, provider=provider, status=410)
