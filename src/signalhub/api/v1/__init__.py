"""Version 1 API endpoints."""

from .endpoints import calls_router, conversations_router, users_router

__all__ = [
    "calls_router",
    "conversations_router",
    "users_router",
]
