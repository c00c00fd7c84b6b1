"""Call signaling payload schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from signalhub.models import CallMedia, CallState, ParticipantState
from signalhub.services.records import CallRecord, ParticipantRecord


class CallIncomingOut(BaseModel):
    """Invitation pushed to a direct-call target; ``room_token`` is relayed verbatim."""

    call_id: int
    caller_id: int
    room_token: str
    media: CallMedia


class CallAnsweredOut(BaseModel):
    call_id: int
    by: int


class CallRejectedOut(BaseModel):
    call_id: int
    by: int


class CallEndedOut(BaseModel):
    call_id: int
    ended_by: int | None
    reason: str
    duration_seconds: int | None = None


class CallTimedOutOut(BaseModel):
    call_id: int
    caller_id: int
    target_id: int | None


class PeerConnectionOut(BaseModel):
    """Payload of ``call:peer-reconnecting`` and ``call:peer-resumed``."""

    call_id: int
    user_id: int


class GroupCallIncomingOut(BaseModel):
    call_id: int
    group_id: int
    initiator_id: int
    room_token: str
    media: CallMedia


class GroupCallParticipantOut(BaseModel):
    call_id: int
    group_id: int
    user_id: int
    duration_seconds: int | None = None


class GroupCallEndedOut(BaseModel):
    call_id: int
    group_id: int
    reason: str


class ParticipantOut(BaseModel):
    user_id: int
    state: ParticipantState
    joined_at: datetime | None
    left_at: datetime | None
    duration_seconds: int | None

    @classmethod
    def from_record(cls, record: ParticipantRecord) -> ParticipantOut:
        return cls(
            user_id=record.user_id,
            state=record.state,
            joined_at=record.joined_at,
            left_at=record.left_at,
            duration_seconds=record.duration_seconds,
        )


class CallOut(BaseModel):
    """Call state as returned by acknowledgements and the REST API."""

    id: int
    kind: str
    media: CallMedia
    room_token: str
    state: CallState
    initiator_id: int
    target_id: int | None
    group_id: int | None
    end_reason: str | None
    duration_seconds: int | None
    created_at: datetime
    answered_at: datetime | None
    ended_at: datetime | None
    participants: list[ParticipantOut] = []

    @classmethod
    def from_record(
        cls,
        record: CallRecord,
        participants: list[ParticipantRecord] | None = None,
    ) -> CallOut:
        return cls(
            id=record.id,
            kind=record.kind,
            media=CallMedia(record.media),
            room_token=record.room_token,
            state=record.state,
            initiator_id=record.initiator_user_id,
            target_id=record.target_user_id,
            group_id=record.conversation_id,
            end_reason=record.end_reason,
            duration_seconds=record.duration_seconds,
            created_at=record.created_at,
            answered_at=record.answered_at,
            ended_at=record.ended_at,
            participants=[ParticipantOut.from_record(p) for p in participants or []],
        )
