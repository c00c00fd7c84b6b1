"""API endpoint modules for version 1."""

from .calls import router as calls_router
from .conversations import router as conversations_router
from .users import router as users_router

__all__ = [
    "calls_router",
    "conversations_router",
    "users_router",
]
