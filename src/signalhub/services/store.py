"""Store adapter used by the signaling core.

``Store`` is the contract the fan-out engine, call state machine and outbox
depend on. ``SqlStore`` implements it over synchronous SQLAlchemy sessions,
pushing every unit of work onto a worker thread with ``asyncio.to_thread`` so
a store write is a suspension point that never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol, TypeVar

from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signalhub.db.time import utcnow
from signalhub.models import (
    Call,
    CallParticipant,
    CallState,
    Conversation,
    ConversationKind,
    ConversationMember,
    Message,
    MessageHidden,
    ParticipantState,
    PendingTermination,
    ReadReceipt,
    User,
)
from signalhub.models.conversation import direct_pair_key
from signalhub.services.errors import AlreadyDeletedError, InvalidPayloadError, NotFoundError
from signalhub.services.records import (
    CallRecord,
    ConversationRecord,
    MessageRecord,
    ParticipantRecord,
    PendingTerminationRecord,
    ReadReceiptRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Store(Protocol):
    """Persistence operations the signaling core relies on.

    All methods return detached records carrying authoritative ids and
    timestamps.
    """

    async def get_user(self, user_id: int) -> UserRecord | None: ...

    async def touch_last_seen(self, user_id: int) -> None: ...

    async def create_message(
        self,
        conversation_id: int,
        sender_id: int,
        ciphertext: bytes,
        iv: bytes,
        system_event: str | None = None,
    ) -> MessageRecord: ...

    async def get_message(self, message_id: int) -> MessageRecord | None: ...

    async def update_message(self, message_id: int, ciphertext: bytes, iv: bytes) -> MessageRecord: ...

    async def tombstone_message(self, message_id: int) -> MessageRecord: ...

    async def hide_message(self, message_id: int, user_id: int) -> None: ...

    async def record_read(self, message_id: int, user_id: int) -> tuple[ReadReceiptRecord, bool]: ...

    async def conversation_members(self, conversation_id: int) -> frozenset[int]: ...

    async def get_conversation(self, conversation_id: int) -> ConversationRecord | None: ...

    async def find_direct_conversation(self, user_a: int, user_b: int) -> ConversationRecord | None: ...

    async def create_conversation(
        self,
        kind: ConversationKind,
        member_ids: Iterable[int],
        admin_user_id: int | None = None,
        title: str | None = None,
    ) -> ConversationRecord: ...

    async def list_conversations(self, user_id: int) -> list[ConversationRecord]: ...

    async def add_member(self, conversation_id: int, user_id: int) -> bool: ...

    async def remove_member(self, conversation_id: int, user_id: int) -> bool: ...

    async def peers_of(self, user_id: int) -> frozenset[int]: ...

    async def history(
        self,
        conversation_id: int,
        viewer_id: int,
        before: int | None = None,
        limit: int = 50,
    ) -> list[MessageRecord]: ...

    async def unread_count(self, user_id: int, conversation_id: int | None = None) -> int: ...

    async def create_call(
        self,
        *,
        kind: str,
        media: str,
        room_token: str,
        initiator_id: int,
        state: CallState,
        target_id: int | None = None,
        conversation_id: int | None = None,
    ) -> CallRecord: ...

    async def get_call(self, call_id: int) -> CallRecord | None: ...

    async def update_call_state(
        self,
        call_id: int,
        state: CallState,
        *,
        end_reason: str | None = None,
        ended_by: int | None = None,
        duration_seconds: int | None = None,
    ) -> CallRecord: ...

    async def upsert_participant(
        self,
        call_id: int,
        user_id: int,
        state: ParticipantState,
        duration_seconds: int | None = None,
    ) -> ParticipantRecord: ...

    async def list_participants(self, call_id: int) -> list[ParticipantRecord]: ...

    async def calls_for_user(
        self,
        user_id: int,
        states: Iterable[CallState] | None = None,
    ) -> list[CallRecord]: ...

    async def put_pending_termination(
        self,
        *,
        call_id: int,
        user_id: int,
        peer_user_id: int | None,
        reason: str,
        peer_notified: bool,
    ) -> PendingTerminationRecord: ...

    async def pending_terminations_for(self, user_id: int) -> list[PendingTerminationRecord]: ...

    async def delete_pending_termination(self, call_id: int) -> bool: ...


def _member_ids(db: Session, conversation_id: int) -> frozenset[int]:
    rows = db.execute(
        select(ConversationMember.user_id).where(
            ConversationMember.conversation_id == conversation_id
        )
    )
    return frozenset(rows.scalars())


def _conversation_record(db: Session, conversation: Conversation) -> ConversationRecord:
    return ConversationRecord.from_model(conversation, _member_ids(db, conversation.id))


def _require_message(db: Session, message_id: int) -> Message:
    message = db.get(Message, message_id)
    if message is None:
        raise NotFoundError(f"message {message_id} does not exist")
    return message


def _require_call(db: Session, call_id: int) -> Call:
    call = db.get(Call, call_id)
    if call is None:
        raise NotFoundError(f"call {call_id} does not exist")
    return call


class SqlStore:
    """``Store`` implementation backed by SQLAlchemy sessions."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._in_session, fn, *args)

    def _in_session(self, fn: Callable[..., T], *args: Any) -> T:
        with self._session_factory() as db:
            return fn(db, *args)

    # Users

    async def get_user(self, user_id: int) -> UserRecord | None:
        def _get(db: Session) -> UserRecord | None:
            user = db.get(User, user_id)
            return UserRecord.from_model(user) if user is not None else None

        return await self._run(_get)

    async def touch_last_seen(self, user_id: int) -> None:
        def _touch(db: Session) -> None:
            user = db.get(User, user_id)
            if user is None:
                return
            user.last_seen_at = utcnow()
            db.commit()

        await self._run(_touch)

    # Messages

    async def create_message(
        self,
        conversation_id: int,
        sender_id: int,
        ciphertext: bytes,
        iv: bytes,
        system_event: str | None = None,
    ) -> MessageRecord:
        def _create(db: Session) -> MessageRecord:
            message = Message(
                conversation_id=conversation_id,
                sender_user_id=sender_id,
                ciphertext=ciphertext,
                iv=iv,
                system_event=system_event,
                created_at=utcnow(),
            )
            db.add(message)
            db.commit()
            db.refresh(message)
            return MessageRecord.from_model(message)

        return await self._run(_create)

    async def get_message(self, message_id: int) -> MessageRecord | None:
        def _get(db: Session) -> MessageRecord | None:
            message = db.get(Message, message_id)
            return MessageRecord.from_model(message) if message is not None else None

        return await self._run(_get)

    async def update_message(self, message_id: int, ciphertext: bytes, iv: bytes) -> MessageRecord:
        def _update(db: Session) -> MessageRecord:
            message = _require_message(db, message_id)
            if message.deleted_for_all:
                raise AlreadyDeletedError(f"message {message_id} was deleted for everyone")
            message.ciphertext = ciphertext
            message.iv = iv
            message.edited_at = utcnow()
            db.commit()
            db.refresh(message)
            return MessageRecord.from_model(message)

        return await self._run(_update)

    async def tombstone_message(self, message_id: int) -> MessageRecord:
        def _tombstone(db: Session) -> MessageRecord:
            message = _require_message(db, message_id)
            if message.deleted_for_all:
                raise AlreadyDeletedError(f"message {message_id} was deleted for everyone")
            message.deleted_for_all = True
            message.ciphertext = b""
            message.iv = b""
            db.commit()
            db.refresh(message)
            return MessageRecord.from_model(message)

        return await self._run(_tombstone)

    async def hide_message(self, message_id: int, user_id: int) -> None:
        def _hide(db: Session) -> None:
            _require_message(db, message_id)
            if db.get(MessageHidden, (message_id, user_id)) is not None:
                return
            db.add(MessageHidden(message_id=message_id, user_id=user_id, hidden_at=utcnow()))
            try:
                db.commit()
            except IntegrityError:
                # Another device hid it first.
                db.rollback()

        await self._run(_hide)

    async def record_read(self, message_id: int, user_id: int) -> tuple[ReadReceiptRecord, bool]:
        def _record(db: Session) -> tuple[ReadReceiptRecord, bool]:
            receipt = db.get(ReadReceipt, (message_id, user_id))
            if receipt is not None:
                return ReadReceiptRecord.from_model(receipt), False
            receipt = ReadReceipt(message_id=message_id, user_id=user_id, read_at=utcnow())
            db.add(receipt)
            try:
                db.commit()
            except IntegrityError:
                # Another device recorded the same read first.
                db.rollback()
                existing = db.get(ReadReceipt, (message_id, user_id))
                if existing is None:
                    raise
                return ReadReceiptRecord.from_model(existing), False
            db.refresh(receipt)
            return ReadReceiptRecord.from_model(receipt), True

        return await self._run(_record)

    # Conversations

    async def conversation_members(self, conversation_id: int) -> frozenset[int]:
        return await self._run(_member_ids, conversation_id)

    async def get_conversation(self, conversation_id: int) -> ConversationRecord | None:
        def _get(db: Session) -> ConversationRecord | None:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                return None
            return _conversation_record(db, conversation)

        return await self._run(_get)

    async def find_direct_conversation(self, user_a: int, user_b: int) -> ConversationRecord | None:
        def _find(db: Session) -> ConversationRecord | None:
            conversation = db.execute(
                select(Conversation).where(Conversation.direct_key == direct_pair_key(user_a, user_b))
            ).scalar_one_or_none()
            if conversation is None:
                return None
            return _conversation_record(db, conversation)

        return await self._run(_find)

    async def create_conversation(
        self,
        kind: ConversationKind,
        member_ids: Iterable[int],
        admin_user_id: int | None = None,
        title: str | None = None,
    ) -> ConversationRecord:
        members = set(member_ids)
        if admin_user_id is not None:
            members.add(admin_user_id)

        def _create(db: Session) -> ConversationRecord:
            direct_key = None
            if kind == ConversationKind.DIRECT:
                if len(members) != 2:
                    raise InvalidPayloadError("a direct conversation needs exactly two users")
                direct_key = direct_pair_key(*members)
                existing = db.execute(
                    select(Conversation).where(Conversation.direct_key == direct_key)
                ).scalar_one_or_none()
                if existing is not None:
                    return _conversation_record(db, existing)

            missing = members - set(db.execute(select(User.id).where(User.id.in_(members))).scalars())
            if missing:
                raise NotFoundError(f"unknown users: {sorted(missing)}")

            conversation = Conversation(
                kind=kind.value,
                title=title,
                admin_user_id=admin_user_id if kind == ConversationKind.GROUP else None,
                direct_key=direct_key,
                created_at=utcnow(),
            )
            db.add(conversation)
            db.flush()
            for user_id in sorted(members):
                db.add(ConversationMember(conversation_id=conversation.id, user_id=user_id))
            try:
                db.commit()
            except IntegrityError:
                if direct_key is None:
                    raise
                # Another request created the same pair first.
                db.rollback()
                logger.debug("Direct conversation %s created concurrently", direct_key)
                existing = db.execute(
                    select(Conversation).where(Conversation.direct_key == direct_key)
                ).scalar_one()
                return _conversation_record(db, existing)
            db.refresh(conversation)
            logger.info("Created %s conversation %s", kind.value, conversation.id)
            return _conversation_record(db, conversation)

        return await self._run(_create)

    async def list_conversations(self, user_id: int) -> list[ConversationRecord]:
        def _list(db: Session) -> list[ConversationRecord]:
            conversations = db.execute(
                select(Conversation)
                .join(ConversationMember, ConversationMember.conversation_id == Conversation.id)
                .where(ConversationMember.user_id == user_id)
                .order_by(Conversation.id)
            ).scalars()
            return [_conversation_record(db, conversation) for conversation in conversations]

        return await self._run(_list)

    async def add_member(self, conversation_id: int, user_id: int) -> bool:
        def _add(db: Session) -> bool:
            if db.get(Conversation, conversation_id) is None:
                raise NotFoundError(f"conversation {conversation_id} does not exist")
            if db.get(User, user_id) is None:
                raise NotFoundError(f"user {user_id} does not exist")
            if db.get(ConversationMember, (conversation_id, user_id)) is not None:
                return False
            db.add(ConversationMember(conversation_id=conversation_id, user_id=user_id))
            db.commit()
            return True

        return await self._run(_add)

    async def remove_member(self, conversation_id: int, user_id: int) -> bool:
        def _remove(db: Session) -> bool:
            member = db.get(ConversationMember, (conversation_id, user_id))
            if member is None:
                return False
            db.delete(member)
            db.commit()
            return True

        return await self._run(_remove)

    async def peers_of(self, user_id: int) -> frozenset[int]:
        def _peers(db: Session) -> frozenset[int]:
            mine = select(ConversationMember.conversation_id).where(
                ConversationMember.user_id == user_id
            )
            rows = db.execute(
                select(ConversationMember.user_id)
                .where(
                    ConversationMember.conversation_id.in_(mine),
                    ConversationMember.user_id != user_id,
                )
                .distinct()
            )
            return frozenset(rows.scalars())

        return await self._run(_peers)

    async def history(
        self,
        conversation_id: int,
        viewer_id: int,
        before: int | None = None,
        limit: int = 50,
    ) -> list[MessageRecord]:
        """Return up to ``limit`` messages older than ``before``, oldest first.

        Messages the viewer deleted for themself are skipped; tombstones are
        returned as tombstones.
        """

        def _history(db: Session) -> list[MessageRecord]:
            hidden = exists().where(
                MessageHidden.message_id == Message.id,
                MessageHidden.user_id == viewer_id,
            )
            stmt = select(Message).where(Message.conversation_id == conversation_id, ~hidden)
            if before is not None:
                stmt = stmt.where(Message.id < before)
            rows = db.execute(stmt.order_by(Message.id.desc()).limit(limit)).scalars()
            return [MessageRecord.from_model(message) for message in reversed(list(rows))]

        return await self._run(_history)

    async def unread_count(self, user_id: int, conversation_id: int | None = None) -> int:
        def _count(db: Session) -> int:
            read = exists().where(
                ReadReceipt.message_id == Message.id,
                ReadReceipt.user_id == user_id,
            )
            hidden = exists().where(
                MessageHidden.message_id == Message.id,
                MessageHidden.user_id == user_id,
            )
            stmt = (
                select(func.count(Message.id))
                .join(
                    ConversationMember,
                    and_(
                        ConversationMember.conversation_id == Message.conversation_id,
                        ConversationMember.user_id == user_id,
                    ),
                )
                .where(
                    Message.sender_user_id != user_id,
                    Message.deleted_for_all.is_(False),
                    ~read,
                    ~hidden,
                )
            )
            if conversation_id is not None:
                stmt = stmt.where(Message.conversation_id == conversation_id)
            return int(db.execute(stmt).scalar_one())

        return await self._run(_count)

    # Calls

    async def create_call(
        self,
        *,
        kind: str,
        media: str,
        room_token: str,
        initiator_id: int,
        state: CallState,
        target_id: int | None = None,
        conversation_id: int | None = None,
    ) -> CallRecord:
        def _create(db: Session) -> CallRecord:
            now = utcnow()
            call = Call(
                kind=kind,
                media=media,
                room_token=room_token,
                initiator_user_id=initiator_id,
                target_user_id=target_id,
                conversation_id=conversation_id,
                state=state.value,
                created_at=now,
                answered_at=now if state == CallState.ACTIVE else None,
            )
            db.add(call)
            db.commit()
            db.refresh(call)
            return CallRecord.from_model(call)

        return await self._run(_create)

    async def get_call(self, call_id: int) -> CallRecord | None:
        def _get(db: Session) -> CallRecord | None:
            call = db.get(Call, call_id)
            return CallRecord.from_model(call) if call is not None else None

        return await self._run(_get)

    async def update_call_state(
        self,
        call_id: int,
        state: CallState,
        *,
        end_reason: str | None = None,
        ended_by: int | None = None,
        duration_seconds: int | None = None,
    ) -> CallRecord:
        def _update(db: Session) -> CallRecord:
            call = _require_call(db, call_id)
            now = utcnow()
            call.state = state.value
            if state == CallState.ACTIVE and call.answered_at is None:
                call.answered_at = now
            if state.terminal:
                call.ended_at = now
                call.end_reason = end_reason
                call.ended_by_user_id = ended_by
                call.duration_seconds = duration_seconds
            db.commit()
            db.refresh(call)
            return CallRecord.from_model(call)

        return await self._run(_update)

    async def upsert_participant(
        self,
        call_id: int,
        user_id: int,
        state: ParticipantState,
        duration_seconds: int | None = None,
    ) -> ParticipantRecord:
        def _upsert(db: Session) -> ParticipantRecord:
            now = utcnow()
            participant = db.get(CallParticipant, (call_id, user_id))
            if participant is None:
                participant = CallParticipant(call_id=call_id, user_id=user_id, state=state.value)
                db.add(participant)
            participant.state = state.value
            if state == ParticipantState.JOINED:
                participant.joined_at = now
                participant.left_at = None
            elif state == ParticipantState.LEFT:
                participant.left_at = now
                participant.duration_seconds = duration_seconds
            db.commit()
            db.refresh(participant)
            return ParticipantRecord.from_model(participant)

        return await self._run(_upsert)

    async def list_participants(self, call_id: int) -> list[ParticipantRecord]:
        def _list(db: Session) -> list[ParticipantRecord]:
            rows = db.execute(
                select(CallParticipant)
                .where(CallParticipant.call_id == call_id)
                .order_by(CallParticipant.user_id)
            ).scalars()
            return [ParticipantRecord.from_model(row) for row in rows]

        return await self._run(_list)

    async def calls_for_user(
        self,
        user_id: int,
        states: Iterable[CallState] | None = None,
    ) -> list[CallRecord]:
        wanted = [state.value for state in states] if states is not None else None

        def _list(db: Session) -> list[CallRecord]:
            participating = exists().where(
                CallParticipant.call_id == Call.id,
                CallParticipant.user_id == user_id,
            )
            stmt = select(Call).where(
                or_(
                    Call.initiator_user_id == user_id,
                    Call.target_user_id == user_id,
                    participating,
                )
            )
            if wanted is not None:
                stmt = stmt.where(Call.state.in_(wanted))
            rows = db.execute(stmt.order_by(Call.id)).scalars()
            return [CallRecord.from_model(call) for call in rows]

        return await self._run(_list)

    # Pending terminations

    async def put_pending_termination(
        self,
        *,
        call_id: int,
        user_id: int,
        peer_user_id: int | None,
        reason: str,
        peer_notified: bool,
    ) -> PendingTerminationRecord:
        def _put(db: Session) -> PendingTerminationRecord:
            row = db.get(PendingTermination, call_id)
            if row is None:
                row = PendingTermination(call_id=call_id)
                db.add(row)
            row.user_id = user_id
            row.peer_user_id = peer_user_id
            row.reason = reason
            row.peer_notified = peer_notified
            row.created_at = utcnow()
            db.commit()
            db.refresh(row)
            return PendingTerminationRecord.from_model(row)

        return await self._run(_put)

    async def pending_terminations_for(self, user_id: int) -> list[PendingTerminationRecord]:
        def _list(db: Session) -> list[PendingTerminationRecord]:
            rows = db.execute(
                select(PendingTermination)
                .where(PendingTermination.user_id == user_id)
                .order_by(PendingTermination.created_at)
            ).scalars()
            return [PendingTerminationRecord.from_model(row) for row in rows]

        return await self._run(_list)

    async def delete_pending_termination(self, call_id: int) -> bool:
        def _delete(db: Session) -> bool:
            result = db.execute(
                delete(PendingTermination).where(PendingTermination.call_id == call_id)
            )
            db.commit()
            return bool(result.rowcount)

        return await self._run(_delete)
