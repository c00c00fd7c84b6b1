"""Typed envelope for the real-time event channel.

Inbound frames are validated into one command model per event name (a tagged
union on ``event``). Outbound frames are built through ``build_frame``, which
refuses a payload that does not belong to the event being sent.
"""

from __future__ import annotations

import base64
import binascii
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter

from signalhub.models import CallMedia
from signalhub.schemas.calls import (
    CallAnsweredOut,
    CallEndedOut,
    CallIncomingOut,
    CallRejectedOut,
    CallTimedOutOut,
    GroupCallEndedOut,
    GroupCallIncomingOut,
    GroupCallParticipantOut,
    PeerConnectionOut,
)
from signalhub.schemas.messages import (
    MemberChangeOut,
    MessageDeletedOut,
    MessageOut,
    MessageReadOut,
    TypingOut,
)
from signalhub.schemas.presence import PresenceOut
from signalhub.services.errors import ErrorCode
from signalhub.services.records import DeleteScope


class InboundEvent(StrEnum):
    MESSAGE_SEND = "message:send"
    MESSAGE_EDIT = "message:edit"
    MESSAGE_DELETE = "message:delete"
    MESSAGE_MARK_READ = "message:mark-read"
    MESSAGE_HISTORY = "message:history"
    MESSAGE_UNREAD_COUNT = "message:unread-count"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    CONVERSATION_ADD_MEMBER = "conversation:add-member"
    CONVERSATION_REMOVE_MEMBER = "conversation:remove-member"
    CALL_INVITE = "call:invite"
    CALL_ANSWER = "call:answer"
    CALL_REJECT = "call:reject"
    CALL_END = "call:end"
    CALL_END_BY_CONNECTION = "call:end-by-connection"
    GROUP_CALL_INVITE = "group:call-invite"
    GROUP_CALL_JOIN = "group:call-join"
    GROUP_CALL_LEAVE = "group:call-leave"


class OutboundEvent(StrEnum):
    MESSAGE_NEW = "message:new"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    MESSAGE_READ = "message:read"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    CONVERSATION_MEMBER_ADDED = "conversation:member-added"
    CONVERSATION_MEMBER_REMOVED = "conversation:member-removed"
    CALL_INCOMING = "call:incoming"
    CALL_ANSWERED = "call:answered"
    CALL_REJECTED = "call:rejected"
    CALL_ENDED = "call:ended"
    CALL_ENDED_BY_CONNECTION = "call:ended-by-connection"
    CALL_TIMED_OUT = "call:timed-out"
    CALL_PEER_RECONNECTING = "call:peer-reconnecting"
    CALL_PEER_RESUMED = "call:peer-resumed"
    GROUP_CALL_INCOMING = "group:call-incoming"
    GROUP_CALL_JOINED = "group:call-joined"
    GROUP_CALL_LEFT = "group:call-left"
    GROUP_CALL_ENDED = "group:call-ended"
    PRESENCE_ONLINE = "presence:online"
    PRESENCE_OFFLINE = "presence:offline"


OUTBOUND_PAYLOADS: dict[OutboundEvent, type[BaseModel]] = {
    OutboundEvent.MESSAGE_NEW: MessageOut,
    OutboundEvent.MESSAGE_EDITED: MessageOut,
    OutboundEvent.MESSAGE_DELETED: MessageDeletedOut,
    OutboundEvent.MESSAGE_READ: MessageReadOut,
    OutboundEvent.TYPING_START: TypingOut,
    OutboundEvent.TYPING_STOP: TypingOut,
    OutboundEvent.CONVERSATION_MEMBER_ADDED: MemberChangeOut,
    OutboundEvent.CONVERSATION_MEMBER_REMOVED: MemberChangeOut,
    OutboundEvent.CALL_INCOMING: CallIncomingOut,
    OutboundEvent.CALL_ANSWERED: CallAnsweredOut,
    OutboundEvent.CALL_REJECTED: CallRejectedOut,
    OutboundEvent.CALL_ENDED: CallEndedOut,
    OutboundEvent.CALL_ENDED_BY_CONNECTION: CallEndedOut,
    OutboundEvent.CALL_TIMED_OUT: CallTimedOutOut,
    OutboundEvent.CALL_PEER_RECONNECTING: PeerConnectionOut,
    OutboundEvent.CALL_PEER_RESUMED: PeerConnectionOut,
    OutboundEvent.GROUP_CALL_INCOMING: GroupCallIncomingOut,
    OutboundEvent.GROUP_CALL_JOINED: GroupCallParticipantOut,
    OutboundEvent.GROUP_CALL_LEFT: GroupCallParticipantOut,
    OutboundEvent.GROUP_CALL_ENDED: GroupCallEndedOut,
    OutboundEvent.PRESENCE_ONLINE: PresenceOut,
    OutboundEvent.PRESENCE_OFFLINE: PresenceOut,
}


def build_frame(event: OutboundEvent, payload: BaseModel) -> dict[str, Any]:
    """Serialize an outbound event, checking the payload type bound to ``event``."""
    expected = OUTBOUND_PAYLOADS[event]
    if type(payload) is not expected:
        raise TypeError(
            f"{event.value} carries {expected.__name__}, got {type(payload).__name__}"
        )
    return {"event": event.value, "data": payload.model_dump(mode="json")}


def _decode_base64(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("must be standard base64") from exc
    return value


Base64Blob = Annotated[bytes, BeforeValidator(_decode_base64)]
RoomToken = Annotated[str, Field(min_length=1, max_length=256)]


class _Data(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SendMessageData(_Data):
    conversation_id: int
    ciphertext: Base64Blob
    iv: Base64Blob


class EditMessageData(_Data):
    message_id: int
    ciphertext: Base64Blob
    iv: Base64Blob


class DeleteMessageData(_Data):
    message_id: int
    scope: DeleteScope


class MessageRefData(_Data):
    message_id: int


class HistoryData(_Data):
    conversation_id: int
    before: int | None = None
    limit: int | None = Field(None, ge=1)


class UnreadCountData(_Data):
    conversation_id: int | None = None


class ConversationRefData(_Data):
    conversation_id: int


class MemberData(_Data):
    conversation_id: int
    user_id: int


class CallInviteData(_Data):
    target_id: int
    room_token: RoomToken
    media: CallMedia = CallMedia.VIDEO


class CallRefData(_Data):
    call_id: int


class CallEndData(_Data):
    call_id: int
    duration_seconds: int = Field(0, ge=0)


class CallEndByConnectionData(_Data):
    call_id: int
    reason: str = Field("connection_lost", min_length=1, max_length=64)


class GroupCallInviteData(_Data):
    group_id: int
    room_token: RoomToken
    media: CallMedia = CallMedia.VIDEO


class _Command(BaseModel):
    request_id: str | None = None


class SendMessageCommand(_Command):
    event: Literal["message:send"]
    data: SendMessageData


class EditMessageCommand(_Command):
    event: Literal["message:edit"]
    data: EditMessageData


class DeleteMessageCommand(_Command):
    event: Literal["message:delete"]
    data: DeleteMessageData


class MarkReadCommand(_Command):
    event: Literal["message:mark-read"]
    data: MessageRefData


class HistoryCommand(_Command):
    event: Literal["message:history"]
    data: HistoryData


class UnreadCountCommand(_Command):
    event: Literal["message:unread-count"]
    data: UnreadCountData = UnreadCountData()


class TypingStartCommand(_Command):
    event: Literal["typing:start"]
    data: ConversationRefData


class TypingStopCommand(_Command):
    event: Literal["typing:stop"]
    data: ConversationRefData


class AddMemberCommand(_Command):
    event: Literal["conversation:add-member"]
    data: MemberData


class RemoveMemberCommand(_Command):
    event: Literal["conversation:remove-member"]
    data: MemberData


class CallInviteCommand(_Command):
    event: Literal["call:invite"]
    data: CallInviteData


class CallAnswerCommand(_Command):
    event: Literal["call:answer"]
    data: CallRefData


class CallRejectCommand(_Command):
    event: Literal["call:reject"]
    data: CallRefData


class CallEndCommand(_Command):
    event: Literal["call:end"]
    data: CallEndData


class CallEndByConnectionCommand(_Command):
    event: Literal["call:end-by-connection"]
    data: CallEndByConnectionData


class GroupCallInviteCommand(_Command):
    event: Literal["group:call-invite"]
    data: GroupCallInviteData


class GroupCallJoinCommand(_Command):
    event: Literal["group:call-join"]
    data: CallRefData


class GroupCallLeaveCommand(_Command):
    event: Literal["group:call-leave"]
    data: CallEndData


InboundCommand = Annotated[
    Union[
        SendMessageCommand,
        EditMessageCommand,
        DeleteMessageCommand,
        MarkReadCommand,
        HistoryCommand,
        UnreadCountCommand,
        TypingStartCommand,
        TypingStopCommand,
        AddMemberCommand,
        RemoveMemberCommand,
        CallInviteCommand,
        CallAnswerCommand,
        CallRejectCommand,
        CallEndCommand,
        CallEndByConnectionCommand,
        GroupCallInviteCommand,
        GroupCallJoinCommand,
        GroupCallLeaveCommand,
    ],
    Field(discriminator="event"),
]

_INBOUND = TypeAdapter(InboundCommand)


def parse_inbound(raw: Any) -> Any:
    """Validate a decoded JSON frame into its command model.

    Raises:
        pydantic.ValidationError: for unknown events or malformed payloads.
    """
    return _INBOUND.validate_python(raw)


class Ack(BaseModel):
    """Acknowledgement returned to the caller of one inbound command."""

    event: Literal["ack"] = "ack"
    request_id: str | None = None
    success: bool
    data: dict[str, Any] | None = None
    error: ErrorCode | None = None
    detail: str | None = None

    @classmethod
    def ok(cls, request_id: str | None, data: dict[str, Any] | None = None) -> Ack:
        return cls(request_id=request_id, success=True, data=data)

    @classmethod
    def fail(cls, request_id: str | None, error: ErrorCode, detail: str = "") -> Ack:
        return cls(request_id=request_id, success=False, error=error, detail=detail or None)

    def to_frame(self) -> dict[str, Any]:
        frame: dict[str, Any] = {
            "event": self.event,
            "request_id": self.request_id,
            "success": self.success,
        }
        if self.success:
            frame["data"] = self.data or {}
        else:
            frame["error"] = (self.error or ErrorCode.INVALID_STATE).value
            frame["detail"] = self.detail or ""
        return frame
