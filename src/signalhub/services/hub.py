"""Composition root of the signaling core and the event-channel dispatcher."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from signalhub.core.settings import Settings
from signalhub.schemas.calls import CallOut
from signalhub.schemas.events import (
    Ack,
    CallEndByConnectionData,
    CallEndData,
    CallInviteData,
    CallRefData,
    ConversationRefData,
    DeleteMessageData,
    EditMessageData,
    GroupCallInviteData,
    HistoryData,
    InboundEvent,
    MemberData,
    MessageRefData,
    SendMessageData,
    UnreadCountData,
    parse_inbound,
)
from signalhub.schemas.messages import ConversationOut, MessageOut, UnreadCountOut
from signalhub.services.calls import CallSignaling
from signalhub.services.errors import ErrorCode, SignalError
from signalhub.services.fanout import MessageFanout
from signalhub.services.grace import ReconnectionGraceController
from signalhub.services.outbox import TerminationOutbox
from signalhub.services.registry import Connection, SessionRegistry, Transport
from signalhub.services.store import Store
from signalhub.services.timers import Clock

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[dict[str, Any] | None]]


def _validation_detail(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}" if location else str(first.get("msg", "invalid"))


class SignalHub:
    """Wires registry, fan-out, call signaling, grace controller and outbox together.

    ``connect``/``disconnect`` are driven by the transport layer; ``handle``
    turns one inbound frame into at most one acknowledgement.
    """

    def __init__(
        self,
        store: Store,
        *,
        ring_timeout: float = 30.0,
        reconnect_delay: float = 5.0,
        reconnect_grace: float = 20.0,
        presence_offline_delay: float = 5.0,
        tick: float = 1.0,
        dedup_window: int = 256,
        pending_termination_max_age: float = 300.0,
        history_page_size: int = 50,
        history_page_max: int = 100,
        clock: Clock = time.time,
    ) -> None:
        self.store = store
        self.registry = SessionRegistry(
            store,
            offline_delay=presence_offline_delay,
            tick=tick,
            dedup_window=dedup_window,
            clock=clock,
        )
        self.fanout = MessageFanout(
            store,
            self.registry,
            history_page_size=history_page_size,
            history_page_max=history_page_max,
        )
        self.calls = CallSignaling(store, self.registry, ring_timeout=ring_timeout, tick=tick, clock=clock)
        self.outbox = TerminationOutbox(store, self.registry, max_age=pending_termination_max_age)
        self.grace = ReconnectionGraceController(
            store,
            self.registry,
            self.calls,
            self.fanout,
            self.outbox,
            delay=reconnect_delay,
            grace=reconnect_grace,
            tick=tick,
            clock=clock,
        )
        self._handlers: dict[str, Handler] = {
            InboundEvent.MESSAGE_SEND: self._send_message,
            InboundEvent.MESSAGE_EDIT: self._edit_message,
            InboundEvent.MESSAGE_DELETE: self._delete_message,
            InboundEvent.MESSAGE_MARK_READ: self._mark_read,
            InboundEvent.MESSAGE_HISTORY: self._history,
            InboundEvent.MESSAGE_UNREAD_COUNT: self._unread_count,
            InboundEvent.TYPING_START: self._typing_start,
            InboundEvent.TYPING_STOP: self._typing_stop,
            InboundEvent.CONVERSATION_ADD_MEMBER: self._add_member,
            InboundEvent.CONVERSATION_REMOVE_MEMBER: self._remove_member,
            InboundEvent.CALL_INVITE: self._call_invite,
            InboundEvent.CALL_ANSWER: self._call_answer,
            InboundEvent.CALL_REJECT: self._call_reject,
            InboundEvent.CALL_END: self._call_end,
            InboundEvent.CALL_END_BY_CONNECTION: self._call_end_by_connection,
            InboundEvent.GROUP_CALL_INVITE: self._group_call_invite,
            InboundEvent.GROUP_CALL_JOIN: self._group_call_join,
            InboundEvent.GROUP_CALL_LEAVE: self._group_call_leave,
        }

    @classmethod
    def from_settings(cls, store: Store, settings: Settings) -> SignalHub:
        return cls(
            store,
            ring_timeout=settings.call_ring_timeout_seconds,
            reconnect_delay=settings.call_reconnect_delay_seconds,
            reconnect_grace=settings.call_reconnect_grace_seconds,
            presence_offline_delay=settings.presence_offline_delay_seconds,
            tick=settings.timer_tick_seconds,
            dedup_window=settings.dedup_window_size,
            pending_termination_max_age=settings.pending_termination_max_age_seconds,
            history_page_size=settings.history_page_size,
            history_page_max=settings.history_page_max,
        )

    # Connection lifecycle

    async def connect(self, user_id: int, transport: Transport) -> Connection:
        """Register an authenticated transport and bring it up to date."""
        connection = self.registry.new_connection(user_id, transport)
        await self.registry.register(user_id, connection)
        await self.grace.on_reconnect(user_id)
        await self.calls.replay_ringing(connection)
        await self.outbox.flush(connection)
        logger.info("User %s connected (%s)", user_id, connection.connection_id)
        return connection

    async def disconnect(self, connection: Connection) -> None:
        removed = self.registry.unregister(connection.connection_id)
        if removed is None:
            return
        logger.info("User %s disconnected (%s)", connection.user_id, connection.connection_id)
        if not self.registry.is_online(connection.user_id):
            await self.grace.on_disconnect(connection.user_id)

    async def handle(self, connection: Connection, raw: Any) -> dict[str, Any] | None:
        """Dispatch one inbound frame and return the acknowledgement to send back.

        Successful commands are acknowledged only when they carry a
        ``request_id``; failures are always answered.
        """
        request_id = raw.get("request_id") if isinstance(raw, dict) else None
        if not isinstance(request_id, str):
            request_id = None
        try:
            command = parse_inbound(raw)
        except ValidationError as exc:
            logger.debug("Rejected malformed frame on %s: %s", connection.connection_id, exc)
            return Ack.fail(request_id, ErrorCode.INVALID_PAYLOAD, _validation_detail(exc)).to_frame()

        connection.touch()
        handler = self._handlers[command.event]
        try:
            data = await handler(connection, command.data)
        except SignalError as exc:
            logger.debug("%s from user %s failed: %s", command.event, connection.user_id, exc)
            return Ack.fail(command.request_id, exc.code, exc.detail).to_frame()
        except Exception:
            # Scoped to this command; the channel stays open.
            logger.exception("%s from user %s failed unexpectedly", command.event, connection.user_id)
            return Ack.fail(command.request_id, ErrorCode.INTERNAL, "internal error").to_frame()

        if command.request_id is None:
            return None
        return Ack.ok(command.request_id, data).to_frame()

    async def close(self) -> None:
        """Cancel every pending timer."""
        await self.grace.close()
        await self.calls.close()
        await self.registry.close()

    # Handlers

    @staticmethod
    def _dump(model: BaseModel) -> dict[str, Any]:
        return model.model_dump(mode="json")

    async def _send_message(self, conn: Connection, data: SendMessageData) -> dict[str, Any]:
        message = await self.fanout.send_message(
            conn.user_id, data.conversation_id, data.ciphertext, data.iv, origin=conn.connection_id
        )
        return self._dump(MessageOut.from_record(message))

    async def _edit_message(self, conn: Connection, data: EditMessageData) -> dict[str, Any]:
        message = await self.fanout.edit_message(
            conn.user_id, data.message_id, data.ciphertext, data.iv, origin=conn.connection_id
        )
        return self._dump(MessageOut.from_record(message))

    async def _delete_message(self, conn: Connection, data: DeleteMessageData) -> dict[str, Any]:
        await self.fanout.delete_message(
            conn.user_id, data.message_id, data.scope, origin=conn.connection_id
        )
        return {"message_id": data.message_id, "scope": data.scope.value}

    async def _mark_read(self, conn: Connection, data: MessageRefData) -> dict[str, Any]:
        first = await self.fanout.mark_read(conn.user_id, data.message_id)
        return {"message_id": data.message_id, "first_read": first}

    async def _history(self, conn: Connection, data: HistoryData) -> dict[str, Any]:
        page = await self.fanout.history(
            conn.user_id, data.conversation_id, before=data.before, limit=data.limit
        )
        return self._dump(page)

    async def _unread_count(self, conn: Connection, data: UnreadCountData) -> dict[str, Any]:
        count = await self.fanout.unread_count(conn.user_id, data.conversation_id)
        return self._dump(UnreadCountOut(conversation_id=data.conversation_id, count=count))

    async def _typing_start(self, conn: Connection, data: ConversationRefData) -> None:
        await self.fanout.typing(conn.user_id, data.conversation_id, started=True)

    async def _typing_stop(self, conn: Connection, data: ConversationRefData) -> None:
        await self.fanout.typing(conn.user_id, data.conversation_id, started=False)

    async def _add_member(self, conn: Connection, data: MemberData) -> dict[str, Any]:
        conversation = await self.fanout.add_member(
            conn.user_id, data.conversation_id, data.user_id, origin=conn.connection_id
        )
        return self._dump(ConversationOut.from_record(conversation))

    async def _remove_member(self, conn: Connection, data: MemberData) -> dict[str, Any]:
        conversation = await self.fanout.remove_member(
            conn.user_id, data.conversation_id, data.user_id, origin=conn.connection_id
        )
        return self._dump(ConversationOut.from_record(conversation))

    async def _call_invite(self, conn: Connection, data: CallInviteData) -> dict[str, Any]:
        call = await self.calls.invite(conn.user_id, data.target_id, data.room_token, data.media)
        return self._dump(CallOut.from_record(call))

    async def _call_answer(self, conn: Connection, data: CallRefData) -> dict[str, Any]:
        call = await self.calls.answer(conn.user_id, data.call_id, origin=conn.connection_id)
        return self._dump(CallOut.from_record(call))

    async def _call_reject(self, conn: Connection, data: CallRefData) -> dict[str, Any]:
        call = await self.calls.reject(conn.user_id, data.call_id, origin=conn.connection_id)
        return self._dump(CallOut.from_record(call))

    async def _call_end(self, conn: Connection, data: CallEndData) -> dict[str, Any]:
        termination = await self.calls.end(conn.user_id, data.call_id, data.duration_seconds)
        return {"call_id": data.call_id, "ended": termination is not None}

    async def _call_end_by_connection(
        self, conn: Connection, data: CallEndByConnectionData
    ) -> dict[str, Any]:
        termination = await self.calls.end_by_connection_loss(conn.user_id, data.call_id, data.reason)
        return {"call_id": data.call_id, "ended": termination is not None}

    async def _group_call_invite(self, conn: Connection, data: GroupCallInviteData) -> dict[str, Any]:
        call = await self.calls.invite_group(conn.user_id, data.group_id, data.room_token, data.media)
        return self._dump(CallOut.from_record(call))

    async def _group_call_join(self, conn: Connection, data: CallRefData) -> dict[str, Any]:
        call = await self.calls.join(conn.user_id, data.call_id, origin=conn.connection_id)
        return self._dump(CallOut.from_record(call))

    async def _group_call_leave(self, conn: Connection, data: CallEndData) -> dict[str, Any]:
        call = await self.calls.leave(
            conn.user_id, data.call_id, data.duration_seconds or None, origin=conn.connection_id
        )
        return self._dump(CallOut.from_record(call))
