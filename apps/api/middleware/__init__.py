from .auth import get_current_user, create_access_token
from .logging import LoggingMiddleware
from .errors import register_exception_handlers

__all__ = [
    "get_current_user",
    "create_access_token",
    "LoggingMiddleware",
    "register_exception_handlers",
]
