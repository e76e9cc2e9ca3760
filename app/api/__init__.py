"""API module with routers and dependencies."""

from .app import create_api_app
from .dependencies import require_scheduler, require_user


__all__ = [
    "create_api_app",
    "require_scheduler",
    "require_user",
]
