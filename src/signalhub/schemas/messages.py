"""Message and conversation payload schemas."""

from __future__ import annotations

import base64
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from signalhub.models import ConversationKind
from signalhub.services.records import ConversationRecord, DeleteScope, MessageRecord


def encode_b64(value: bytes) -> str:
    return base64.b64encode(value).decode()


class MessageOut(BaseModel):
    """Message as pushed in ``message:new`` / ``message:edited`` and history pages."""

    id: int
    conversation_id: int
    sender_id: int
    ciphertext: bytes
    iv: bytes
    created_at: datetime
    edited_at: datetime | None = None
    deleted_for_all: bool = False
    system_event: str | None = None

    @field_serializer("ciphertext", "iv")
    def serialize_blob(self, value: bytes) -> str:
        """Encode binary payload fields as base64."""
        return encode_b64(value)

    @classmethod
    def from_record(cls, record: MessageRecord) -> MessageOut:
        return cls(
            id=record.id,
            conversation_id=record.conversation_id,
            sender_id=record.sender_user_id,
            ciphertext=record.ciphertext,
            iv=record.iv,
            created_at=record.created_at,
            edited_at=record.edited_at,
            deleted_for_all=record.deleted_for_all,
            system_event=record.system_event,
        )


class MessageDeletedOut(BaseModel):
    message_id: int
    conversation_id: int
    scope: DeleteScope
    deleted_by: int


class MessageReadOut(BaseModel):
    message_id: int
    conversation_id: int
    by: int
    read_at: datetime


class TypingOut(BaseModel):
    conversation_id: int
    user_id: int


class MemberChangeOut(BaseModel):
    conversation_id: int
    user_id: int
    actor_id: int


class HistoryOut(BaseModel):
    conversation_id: int
    messages: list[MessageOut]
    has_more: bool


class UnreadCountOut(BaseModel):
    conversation_id: int | None = None
    count: int


class ConversationCreate(BaseModel):
    """Schema for creating a conversation over REST."""

    kind: ConversationKind
    member_ids: list[int] = Field(..., min_length=1, description="Users to include besides the caller")
    title: str | None = Field(None, max_length=200)


class MemberAdd(BaseModel):
    user_id: int


class ConversationOut(BaseModel):
    id: int
    kind: ConversationKind
    title: str | None
    admin_user_id: int | None
    member_ids: list[int]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_record(cls, record: ConversationRecord) -> ConversationOut:
        return cls(
            id=record.id,
            kind=ConversationKind(record.kind),
            title=record.title,
            admin_user_id=record.admin_user_id,
            member_ids=sorted(record.member_ids),
            created_at=record.created_at,
        )
