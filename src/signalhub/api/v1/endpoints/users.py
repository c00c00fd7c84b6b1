"""User presence endpoint."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from signalhub.schemas.presence import PresenceOut

from ..dependencies import CurrentUserDep, HubDep

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}/presence", response_model=PresenceOut)
async def get_presence(user_id: int, current_user: CurrentUserDep, hub: HubDep) -> PresenceOut:
    user = await hub.store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return PresenceOut(
        user_id=user.id,
        online=hub.registry.is_online(user.id),
        last_seen_at=user.last_seen_at,
    )
