"""Immutable records handed out by the store.

The signaling core never holds ORM instances across an ``await``; every store
call returns one of these detached snapshots instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from signalhub.db.time import as_utc
from signalhub.models import (
    Call,
    CallParticipant,
    CallState,
    Conversation,
    Message,
    ParticipantState,
    PendingTermination,
    ReadReceipt,
    User,
)


class DeleteScope(StrEnum):
    ME = "ME"
    ALL = "ALL"


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    display_name: str | None
    last_seen_at: datetime | None

    @classmethod
    def from_model(cls, user: User) -> UserRecord:
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            last_seen_at=as_utc(user.last_seen_at),
        )


@dataclass(frozen=True)
class ConversationRecord:
    id: int
    kind: str
    title: str | None
    admin_user_id: int | None
    member_ids: frozenset[int]
    created_at: datetime

    @classmethod
    def from_model(cls, conversation: Conversation, member_ids: frozenset[int]) -> ConversationRecord:
        return cls(
            id=conversation.id,
            kind=conversation.kind,
            title=conversation.title,
            admin_user_id=conversation.admin_user_id,
            member_ids=member_ids,
            created_at=as_utc(conversation.created_at),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class MessageRecord:
    """Snapshot of a message row; tombstones carry empty payload bytes."""

    id: int
    conversation_id: int
    sender_user_id: int
    ciphertext: bytes
    iv: bytes
    created_at: datetime
    edited_at: datetime | None
    deleted_for_all: bool
    system_event: str | None = None

    @classmethod
    def from_model(cls, message: Message) -> MessageRecord:
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_user_id=message.sender_user_id,
            ciphertext=bytes(message.ciphertext),
            iv=bytes(message.iv),
            created_at=as_utc(message.created_at),  # type: ignore[arg-type]
            edited_at=as_utc(message.edited_at),
            deleted_for_all=message.deleted_for_all,
            system_event=message.system_event,
        )


@dataclass(frozen=True)
class ReadReceiptRecord:
    message_id: int
    user_id: int
    read_at: datetime

    @classmethod
    def from_model(cls, receipt: ReadReceipt) -> ReadReceiptRecord:
        return cls(
            message_id=receipt.message_id,
            user_id=receipt.user_id,
            read_at=as_utc(receipt.read_at),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class CallRecord:
    id: int
    kind: str
    media: str
    room_token: str
    initiator_user_id: int
    target_user_id: int | None
    conversation_id: int | None
    state: CallState
    end_reason: str | None
    ended_by_user_id: int | None
    duration_seconds: int | None
    created_at: datetime
    answered_at: datetime | None
    ended_at: datetime | None

    @classmethod
    def from_model(cls, call: Call) -> CallRecord:
        return cls(
            id=call.id,
            kind=call.kind,
            media=call.media,
            room_token=call.room_token,
            initiator_user_id=call.initiator_user_id,
            target_user_id=call.target_user_id,
            conversation_id=call.conversation_id,
            state=CallState(call.state),
            end_reason=call.end_reason,
            ended_by_user_id=call.ended_by_user_id,
            duration_seconds=call.duration_seconds,
            created_at=as_utc(call.created_at),  # type: ignore[arg-type]
            answered_at=as_utc(call.answered_at),
            ended_at=as_utc(call.ended_at),
        )

    def peer_of(self, user_id: int) -> int | None:
        """Return the other party of a direct call."""
        if user_id == self.initiator_user_id:
            return self.target_user_id
        if user_id == self.target_user_id:
            return self.initiator_user_id
        return None


@dataclass(frozen=True)
class ParticipantRecord:
    call_id: int
    user_id: int
    state: ParticipantState
    joined_at: datetime | None
    left_at: datetime | None
    duration_seconds: int | None

    @classmethod
    def from_model(cls, participant: CallParticipant) -> ParticipantRecord:
        return cls(
            call_id=participant.call_id,
            user_id=participant.user_id,
            state=ParticipantState(participant.state),
            joined_at=as_utc(participant.joined_at),
            left_at=as_utc(participant.left_at),
            duration_seconds=participant.duration_seconds,
        )


@dataclass(frozen=True)
class PendingTerminationRecord:
    call_id: int
    user_id: int
    peer_user_id: int | None
    reason: str
    peer_notified: bool
    created_at: datetime

    @classmethod
    def from_model(cls, row: PendingTermination) -> PendingTerminationRecord:
        return cls(
            call_id=row.call_id,
            user_id=row.user_id,
            peer_user_id=row.peer_user_id,
            reason=row.reason,
            peer_notified=row.peer_notified,
            created_at=as_utc(row.created_at),  # type: ignore[arg-type]
        )
