from .channels import router as channels_router
from .health import router as health_router
from .webhooks import router as webhooks_router

__all__ = ["channels_router", "health_router", "webhooks_router"]
