"""Presence payload schemas."""

from datetime import datetime

from pydantic import BaseModel


class PresenceOut(BaseModel):
    """Payload of ``presence:online`` / ``presence:offline`` and the presence endpoint."""

    user_id: int
    online: bool
    last_seen_at: datetime | None = None
