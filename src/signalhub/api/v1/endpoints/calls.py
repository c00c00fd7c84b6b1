"""Read-only call endpoints. Signaling itself happens on the event channel."""

from __future__ import annotations

from fastapi import APIRouter

from signalhub.schemas.calls import CallOut
from signalhub.services.errors import SignalError

from ..dependencies import CurrentUserDep, HubDep, raise_http

router = APIRouter(prefix="/calls", tags=["calls"])


@router.get("/{call_id}", response_model=CallOut)
async def get_call(call_id: int, current_user: CurrentUserDep, hub: HubDep) -> CallOut:
    """Return a call's state and participants to one of its parties."""
    try:
        call, participants = await hub.calls.describe(call_id, current_user.id)
    except SignalError as exc:
        raise_http(exc)
    return CallOut.from_record(call, participants)
