"""Message fan-out engine.

Every mutation authorizes the actor, persists through the store and only then
pushes the resulting event to the live audience. Work on one conversation is
serialized by a per-conversation lock, so events leave in the same order the
store assigned ids; different conversations never wait on each other.
"""

from __future__ import annotations

import logging

from signalhub.models import ConversationKind
from signalhub.schemas.events import OutboundEvent, build_frame
from signalhub.schemas.messages import (
    HistoryOut,
    MemberChangeOut,
    MessageDeletedOut,
    MessageOut,
    MessageReadOut,
    TypingOut,
)
from signalhub.services.errors import (
    AlreadyDeletedError,
    InvalidPayloadError,
    NotAMemberError,
    NotAuthorError,
    NotFoundError,
)
from signalhub.services.locks import KeyedLocks
from signalhub.services.records import ConversationRecord, DeleteScope, MessageRecord
from signalhub.services.registry import SessionRegistry
from signalhub.services.store import Store

logger = logging.getLogger(__name__)

SYSTEM_CALL_ENDED_BY_CONNECTION = "call_ended_by_connection"


class MessageFanout:
    """Applies message mutations and pushes them to every live audience connection."""

    def __init__(
        self,
        store: Store,
        registry: SessionRegistry,
        *,
        history_page_size: int = 50,
        history_page_max: int = 100,
    ) -> None:
        self._store = store
        self._registry = registry
        self._locks = KeyedLocks()
        self._history_page_size = history_page_size
        self._history_page_max = history_page_max

    async def _members_or_raise(self, conversation_id: int, actor_id: int) -> frozenset[int]:
        members = await self._store.conversation_members(conversation_id)
        if actor_id not in members:
            raise NotAMemberError(f"user {actor_id} is not in conversation {conversation_id}")
        return members

    async def _message_or_raise(self, message_id: int) -> MessageRecord:
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"message {message_id} does not exist")
        return message

    async def send_message(
        self,
        sender_id: int,
        conversation_id: int,
        ciphertext: bytes,
        iv: bytes,
        *,
        origin: str | None = None,
    ) -> MessageRecord:
        """Persist a message and push ``message:new`` to the audience.

        The audience is every live connection of every member, including the
        sender's other devices but not ``origin`` (the connection that sent it).
        """
        async with self._locks.hold(conversation_id):
            members = await self._members_or_raise(conversation_id, sender_id)
            message = await self._store.create_message(conversation_id, sender_id, ciphertext, iv)
            frame = build_frame(OutboundEvent.MESSAGE_NEW, MessageOut.from_record(message))
            delivered = await self._registry.push_to_users(
                members,
                frame,
                exclude=origin,
                conversation_id=conversation_id,
                message_id=message.id,
            )
        logger.debug(
            "Message %s in conversation %s delivered to %d connections",
            message.id,
            conversation_id,
            delivered,
        )
        return message

    async def post_system_notice(
        self,
        conversation_id: int,
        actor_id: int,
        system_event: str,
    ) -> MessageRecord:
        """Persist a server-generated notice and push it to every member."""
        async with self._locks.hold(conversation_id):
            members = await self._store.conversation_members(conversation_id)
            message = await self._store.create_message(
                conversation_id, actor_id, b"", b"", system_event=system_event
            )
            frame = build_frame(OutboundEvent.MESSAGE_NEW, MessageOut.from_record(message))
            await self._registry.push_to_users(
                members,
                frame,
                conversation_id=conversation_id,
                message_id=message.id,
            )
        logger.info("System notice %s posted to conversation %s", system_event, conversation_id)
        return message

    async def edit_message(
        self,
        actor_id: int,
        message_id: int,
        ciphertext: bytes,
        iv: bytes,
        *,
        origin: str | None = None,
    ) -> MessageRecord:
        original = await self._message_or_raise(message_id)
        conversation_id = original.conversation_id
        async with self._locks.hold(conversation_id):
            if original.sender_user_id != actor_id:
                raise NotAuthorError(f"user {actor_id} did not send message {message_id}")
            members = await self._members_or_raise(conversation_id, actor_id)
            # Raises AlreadyDeletedError if a delete-for-all landed first.
            message = await self._store.update_message(message_id, ciphertext, iv)
            frame = build_frame(OutboundEvent.MESSAGE_EDITED, MessageOut.from_record(message))
            await self._registry.push_to_users(
                members,
                frame,
                exclude=origin,
                conversation_id=conversation_id,
                event_key=(OutboundEvent.MESSAGE_EDITED.value, message.id, message.edited_at),
            )
        logger.debug("Message %s edited by user %s", message_id, actor_id)
        return message

    async def delete_message(
        self,
        actor_id: int,
        message_id: int,
        scope: DeleteScope,
        *,
        origin: str | None = None,
    ) -> None:
        """Delete for everyone (sender only) or hide for the actor alone.

        ``ALL`` tombstones the message and pushes ``message:deleted`` to the
        audience. ``ME`` is only echoed to the actor's own other connections.
        """
        original = await self._message_or_raise(message_id)
        conversation_id = original.conversation_id
        async with self._locks.hold(conversation_id):
            members = await self._members_or_raise(conversation_id, actor_id)
            payload = MessageDeletedOut(
                message_id=message_id,
                conversation_id=conversation_id,
                scope=scope,
                deleted_by=actor_id,
            )
            frame = build_frame(OutboundEvent.MESSAGE_DELETED, payload)
            event_key = (OutboundEvent.MESSAGE_DELETED.value, message_id, scope.value)

            if scope == DeleteScope.ME:
                await self._store.hide_message(message_id, actor_id)
                await self._registry.push_to_users(
                    [actor_id],
                    frame,
                    exclude=origin,
                    conversation_id=conversation_id,
                    event_key=event_key,
                )
                logger.debug("Message %s hidden for user %s", message_id, actor_id)
                return

            if original.sender_user_id != actor_id:
                raise NotAuthorError(f"user {actor_id} did not send message {message_id}")
            current = await self._message_or_raise(message_id)
            if current.deleted_for_all:
                raise AlreadyDeletedError(f"message {message_id} was deleted for everyone")
            await self._store.tombstone_message(message_id)
            await self._registry.push_to_users(
                members,
                frame,
                exclude=origin,
                conversation_id=conversation_id,
                event_key=event_key,
            )
        logger.info("Message %s deleted for everyone by user %s", message_id, actor_id)

    async def mark_read(self, actor_id: int, message_id: int) -> bool:
        """Record a read receipt; returns True only on the first read.

        The first read pushes ``message:read`` to the sender's connections and
        nobody else. Reading one's own message records nothing.
        """
        message = await self._message_or_raise(message_id)
        await self._members_or_raise(message.conversation_id, actor_id)
        if message.sender_user_id == actor_id:
            return False

        receipt, created = await self._store.record_read(message_id, actor_id)
        if not created:
            return False
        payload = MessageReadOut(
            message_id=message_id,
            conversation_id=message.conversation_id,
            by=actor_id,
            read_at=receipt.read_at,
        )
        await self._registry.push_to_users(
            [message.sender_user_id],
            build_frame(OutboundEvent.MESSAGE_READ, payload),
            conversation_id=message.conversation_id,
            event_key=(OutboundEvent.MESSAGE_READ.value, message_id, actor_id),
        )
        return True

    async def typing(self, actor_id: int, conversation_id: int, *, started: bool) -> int:
        """Relay a typing indicator to the other members; nothing is stored."""
        members = await self._members_or_raise(conversation_id, actor_id)
        event = OutboundEvent.TYPING_START if started else OutboundEvent.TYPING_STOP
        frame = build_frame(event, TypingOut(conversation_id=conversation_id, user_id=actor_id))
        return await self._registry.push_to_users(members - {actor_id}, frame)

    async def add_member(
        self,
        actor_id: int,
        conversation_id: int,
        user_id: int,
        *,
        origin: str | None = None,
    ) -> ConversationRecord:
        """Add ``user_id`` to a group. Only the group admin may do this."""
        async with self._locks.hold(conversation_id):
            conversation = await self._group_or_raise(conversation_id)
            if actor_id not in conversation.member_ids:
                raise NotAMemberError(f"user {actor_id} is not in conversation {conversation_id}")
            if conversation.admin_user_id != actor_id:
                raise NotAuthorError("only the group admin can add members")
            added = await self._store.add_member(conversation_id, user_id)
            if added:
                members = await self._store.conversation_members(conversation_id)
                frame = build_frame(
                    OutboundEvent.CONVERSATION_MEMBER_ADDED,
                    MemberChangeOut(conversation_id=conversation_id, user_id=user_id, actor_id=actor_id),
                )
                await self._registry.push_to_users(members, frame, exclude=origin)
                logger.info("User %s added to conversation %s", user_id, conversation_id)
        updated = await self._store.get_conversation(conversation_id)
        return updated or conversation

    async def remove_member(
        self,
        actor_id: int,
        conversation_id: int,
        user_id: int,
        *,
        origin: str | None = None,
    ) -> ConversationRecord:
        """Remove ``user_id`` from a group: the admin removing anyone, or a member leaving."""
        async with self._locks.hold(conversation_id):
            conversation = await self._group_or_raise(conversation_id)
            if actor_id not in conversation.member_ids:
                raise NotAMemberError(f"user {actor_id} is not in conversation {conversation_id}")
            if actor_id != user_id and conversation.admin_user_id != actor_id:
                raise NotAuthorError("only the group admin can remove other members")
            if user_id not in conversation.member_ids:
                raise NotAMemberError(f"user {user_id} is not in conversation {conversation_id}")
            await self._store.remove_member(conversation_id, user_id)
            members = await self._store.conversation_members(conversation_id)
            frame = build_frame(
                OutboundEvent.CONVERSATION_MEMBER_REMOVED,
                MemberChangeOut(conversation_id=conversation_id, user_id=user_id, actor_id=actor_id),
            )
            # The removed user hears about it once; nothing after that.
            await self._registry.push_to_users([*members, user_id], frame, exclude=origin)
            for connection in self._registry.connections_for(user_id):
                connection.ledger.forget(conversation_id)
        logger.info("User %s removed from conversation %s", user_id, conversation_id)
        updated = await self._store.get_conversation(conversation_id)
        return updated or conversation

    async def _group_or_raise(self, conversation_id: int) -> ConversationRecord:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"conversation {conversation_id} does not exist")
        if conversation.kind != ConversationKind.GROUP:
            raise InvalidPayloadError("membership of a direct conversation cannot change")
        return conversation

    async def history(
        self,
        actor_id: int,
        conversation_id: int,
        *,
        before: int | None = None,
        limit: int | None = None,
    ) -> HistoryOut:
        """Return one page of history as the actor sees it, oldest first."""
        await self._members_or_raise(conversation_id, actor_id)
        size = min(limit or self._history_page_size, self._history_page_max)
        page = await self._store.history(conversation_id, actor_id, before=before, limit=size + 1)
        has_more = len(page) > size
        if has_more:
            page = page[1:]
        return HistoryOut(
            conversation_id=conversation_id,
            messages=[MessageOut.from_record(message) for message in page],
            has_more=has_more,
        )

    async def unread_count(self, actor_id: int, conversation_id: int | None = None) -> int:
        if conversation_id is not None:
            await self._members_or_raise(conversation_id, actor_id)
        return await self._store.unread_count(actor_id, conversation_id)
