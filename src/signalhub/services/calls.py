"""Call signaling state machine for direct and group calls.

Direct calls follow::

    REQUESTED -> RINGING -> ACTIVE -> ENDED
                 RINGING -> REJECTED | TIMED_OUT | ENDED

Group calls are drop-in: they start ACTIVE with the initiator joined, members
join and leave freely, and the call ends when the last joined participant
leaves.

Each call id has its own lock, so one call's transition never blocks another.
Reaching a terminal state sets a one-way "concluded" flag for the call; any
later terminating command (a second hang-up, a connection-loss timeout racing
a normal end) observes the flag and is a silent no-op.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from signalhub.db.time import utcnow
from signalhub.models import (
    CallKind,
    CallMedia,
    CallState,
    ConversationKind,
    EndReason,
    ParticipantState,
)
from signalhub.schemas.calls import (
    CallAnsweredOut,
    CallEndedOut,
    CallIncomingOut,
    CallRejectedOut,
    CallTimedOutOut,
    GroupCallEndedOut,
    GroupCallIncomingOut,
    GroupCallParticipantOut,
)
from signalhub.schemas.events import OutboundEvent, build_frame
from signalhub.services.dedup import RecentIdWindow
from signalhub.services.errors import (
    InvalidPayloadError,
    InvalidStateError,
    NotAMemberError,
    NotFoundError,
    TargetUnreachableError,
)
from signalhub.services.locks import KeyedLocks
from signalhub.services.records import CallRecord, ParticipantRecord
from signalhub.services.registry import Connection, SessionRegistry
from signalhub.services.store import Store
from signalhub.services.timers import Clock, KeyedTasks, sleep_until

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.REQUESTED: frozenset({CallState.RINGING, CallState.ENDED}),
    CallState.RINGING: frozenset(
        {CallState.ACTIVE, CallState.REJECTED, CallState.TIMED_OUT, CallState.ENDED}
    ),
    CallState.ACTIVE: frozenset({CallState.ENDED}),
}

ConclusionListener = Callable[[CallRecord], Awaitable[None]]


def can_transition(current: CallState, target: CallState) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def elapsed_seconds(since: datetime | None) -> int:
    if since is None:
        return 0
    return max(0, int((utcnow() - since).total_seconds()))


@dataclass(frozen=True)
class Termination:
    """Outcome of a terminating command that actually changed the call."""

    call: CallRecord
    delivered: int


class CallSignaling:
    """Owns per-call state and participant state; emits signaling events."""

    def __init__(
        self,
        store: Store,
        registry: SessionRegistry,
        *,
        ring_timeout: float = 30.0,
        tick: float = 1.0,
        clock: Clock = time.time,
        concluded_window: int = 4096,
    ) -> None:
        self._store = store
        self._registry = registry
        self._ring_timeout = ring_timeout
        self._tick = tick
        self._clock = clock
        self._locks = KeyedLocks()
        self._concluded = RecentIdWindow(concluded_window)
        self._ring_timers = KeyedTasks("ring-timeout")
        self._listeners: list[ConclusionListener] = []

    def add_conclusion_listener(self, listener: ConclusionListener) -> None:
        """Register a coroutine called once for every call reaching a terminal state."""
        self._listeners.append(listener)

    def ringing(self, call_id: int) -> bool:
        return self._ring_timers.active(call_id)

    # Helpers

    async def _load(self, call_id: int) -> CallRecord:
        call = await self._store.get_call(call_id)
        if call is None:
            raise NotFoundError(f"call {call_id} does not exist")
        if call.state.terminal:
            self._concluded.add(call_id)
        return call

    def is_concluded(self, call: CallRecord) -> bool:
        return call.id in self._concluded or call.state.terminal

    async def _move(self, call: CallRecord, target: CallState, **changes: object) -> CallRecord:
        if not can_transition(call.state, target):
            raise InvalidStateError(f"call {call.id} cannot go from {call.state} to {target}")
        updated = await self._store.update_call_state(call.id, target, **changes)  # type: ignore[arg-type]
        logger.info("Call %s: %s -> %s", call.id, call.state.value, target.value)
        return updated

    async def _conclude(self, call: CallRecord) -> None:
        self._concluded.add(call.id)
        self._ring_timers.cancel(call.id)
        for listener in list(self._listeners):
            try:
                await listener(call)
            except Exception:
                logger.exception("Conclusion listener failed for call %s", call.id)

    async def _members_of_group(self, group_id: int) -> frozenset[int]:
        conversation = await self._store.get_conversation(group_id)
        if conversation is None:
            raise NotFoundError(f"group {group_id} does not exist")
        if conversation.kind != ConversationKind.GROUP:
            raise InvalidPayloadError(f"conversation {group_id} is not a group")
        return conversation.member_ids

    @staticmethod
    def _require_party(call: CallRecord, user_id: int) -> int:
        peer = call.peer_of(user_id)
        if peer is None:
            raise NotAMemberError(f"user {user_id} is not a party of call {call.id}")
        return peer

    @staticmethod
    def _require_kind(call: CallRecord, kind: CallKind) -> None:
        if call.kind != kind:
            raise InvalidStateError(f"call {call.id} is a {call.kind} call")

    # Direct calls

    async def invite(
        self,
        caller_id: int,
        target_id: int,
        room_token: str,
        media: CallMedia = CallMedia.VIDEO,
    ) -> CallRecord:
        """Ring ``target_id``; the room token is forwarded verbatim."""
        if caller_id == target_id:
            raise InvalidPayloadError("cannot call yourself")
        if not self._registry.is_online(target_id):
            raise TargetUnreachableError(f"user {target_id} has no live connection")

        call = await self._store.create_call(
            kind=CallKind.DIRECT,
            media=media,
            room_token=room_token,
            initiator_id=caller_id,
            target_id=target_id,
            state=CallState.REQUESTED,
        )
        async with self._locks.hold(call.id):
            await self._store.upsert_participant(call.id, caller_id, ParticipantState.JOINED)
            await self._store.upsert_participant(call.id, target_id, ParticipantState.INVITED)
            frame = build_frame(
                OutboundEvent.CALL_INCOMING,
                CallIncomingOut(call_id=call.id, caller_id=caller_id, room_token=room_token, media=media),
            )
            delivered = await self._registry.push_to_users(
                [target_id], frame, event_key=(OutboundEvent.CALL_INCOMING.value, call.id)
            )
            if delivered == 0:
                logger.warning("Call %s: invite reached none of user %s's connections", call.id, target_id)
            call = await self._move(call, CallState.RINGING)
            await self._store.upsert_participant(call.id, target_id, ParticipantState.RINGING)
            deadline = self._clock() + self._ring_timeout
            self._ring_timers.spawn(call.id, self._expire_ringing(call.id, deadline))
        return call

    async def answer(self, target_id: int, call_id: int, *, origin: str | None = None) -> CallRecord:
        async with self._locks.hold(call_id):
            call = await self._load(call_id)
            if (
                call.kind != CallKind.DIRECT
                or call.target_user_id != target_id
                or self.is_concluded(call)
                or call.state != CallState.RINGING
            ):
                raise InvalidStateError(f"call {call_id} cannot be answered by user {target_id}")
            self._ring_timers.cancel(call_id)
            call = await self._move(call, CallState.ACTIVE)
            await self._store.upsert_participant(call_id, target_id, ParticipantState.JOINED)
            frame = build_frame(OutboundEvent.CALL_ANSWERED, CallAnsweredOut(call_id=call_id, by=target_id))
            # The target's other devices stop ringing too.
            await self._registry.push_to_users(
                [call.initiator_user_id, target_id], frame, exclude=origin
            )
        return call

    async def reject(self, target_id: int, call_id: int, *, origin: str | None = None) -> CallRecord:
        async with self._locks.hold(call_id):
            call = await self._load(call_id)
            if (
                call.kind != CallKind.DIRECT
                or call.target_user_id != target_id
                or self.is_concluded(call)
                or call.state != CallState.RINGING
            ):
                raise InvalidStateError(f"call {call_id} cannot be rejected by user {target_id}")
            call = await self._move(
                call, CallState.REJECTED, end_reason=EndReason.REJECTED.value, ended_by=target_id
            )
            await self._store.upsert_participant(call_id, target_id, ParticipantState.REJECTED)
            frame = build_frame(OutboundEvent.CALL_REJECTED, CallRejectedOut(call_id=call_id, by=target_id))
            await self._registry.push_to_users(
                [call.initiator_user_id, target_id], frame, exclude=origin
            )
            await self._conclude(call)
        return call

    async def end(self, actor_id: int, call_id: int, duration_seconds: int = 0) -> Termination | None:
        """Hang up. Returns None when the call had already concluded."""
        return await self._terminate(
            actor_id,
            call_id,
            reason=EndReason.HANGUP,
            event=OutboundEvent.CALL_ENDED,
            duration_seconds=duration_seconds,
        )

    async def end_by_connection_loss(
        self,
        actor_id: int,
        call_id: int,
        reason: str = EndReason.CONNECTION_LOST,
    ) -> Termination | None:
        """Terminate because ``actor_id``'s side was unreachable for too long."""
        return await self._terminate(
            actor_id,
            call_id,
            reason=reason,
            event=OutboundEvent.CALL_ENDED_BY_CONNECTION,
            duration_seconds=None,
        )

    async def _terminate(
        self,
        actor_id: int,
        call_id: int,
        *,
        reason: str,
        event: OutboundEvent,
        duration_seconds: int | None,
    ) -> Termination | None:
        async with self._locks.hold(call_id):
            call = await self._load(call_id)
            self._require_kind(call, CallKind.DIRECT)
            peer_id = self._require_party(call, actor_id)
            if self.is_concluded(call):
                logger.debug("Call %s already concluded; %s ignored", call_id, event.value)
                return None
            if duration_seconds is None:
                duration_seconds = elapsed_seconds(call.answered_at) if call.answered_at else 0

            call = await self._move(
                call,
                CallState.ENDED,
                end_reason=str(reason),
                ended_by=actor_id,
                duration_seconds=duration_seconds,
            )
            for participant in await self._store.list_participants(call_id):
                if participant.state == ParticipantState.JOINED:
                    await self._store.upsert_participant(
                        call_id, participant.user_id, ParticipantState.LEFT, duration_seconds
                    )
            payload = CallEndedOut(
                call_id=call_id,
                ended_by=actor_id,
                reason=str(reason),
                duration_seconds=duration_seconds,
            )
            delivered = await self._registry.push_to_users([peer_id], build_frame(event, payload))
            await self._conclude(call)
        return Termination(call=call, delivered=delivered)

    async def _expire_ringing(self, call_id: int, deadline: float) -> None:
        await sleep_until(deadline, tick=self._tick, clock=self._clock)
        async with self._locks.hold(call_id):
            call = await self._load(call_id)
            if self.is_concluded(call) or call.state != CallState.RINGING:
                return
            call = await self._move(call, CallState.TIMED_OUT, end_reason=EndReason.NO_ANSWER.value)
            payload = CallTimedOutOut(
                call_id=call_id,
                caller_id=call.initiator_user_id,
                target_id=call.target_user_id,
            )
            parties = [call.initiator_user_id]
            if call.target_user_id is not None:
                parties.append(call.target_user_id)
            await self._registry.push_to_users(
                parties,
                build_frame(OutboundEvent.CALL_TIMED_OUT, payload),
            )
            await self._conclude(call)

    async def replay_ringing(self, connection: Connection) -> int:
        """Push ``call:incoming`` for calls still ringing this user to a new connection."""
        replayed = 0
        for call in await self._store.calls_for_user(connection.user_id, [CallState.RINGING]):
            if call.target_user_id != connection.user_id or self.is_concluded(call):
                continue
            frame = build_frame(
                OutboundEvent.CALL_INCOMING,
                CallIncomingOut(
                    call_id=call.id,
                    caller_id=call.initiator_user_id,
                    room_token=call.room_token,
                    media=CallMedia(call.media),
                ),
            )
            if await connection.push(frame, event_key=(OutboundEvent.CALL_INCOMING.value, call.id)):
                replayed += 1
        return replayed

    # Group calls

    async def invite_group(
        self,
        caller_id: int,
        group_id: int,
        room_token: str,
        media: CallMedia = CallMedia.VIDEO,
    ) -> CallRecord:
        """Start a drop-in group call and notify the other members."""
        members = await self._members_of_group(group_id)
        if caller_id not in members:
            raise NotAMemberError(f"user {caller_id} is not in group {group_id}")

        call = await self._store.create_call(
            kind=CallKind.GROUP,
            media=media,
            room_token=room_token,
            initiator_id=caller_id,
            conversation_id=group_id,
            state=CallState.ACTIVE,
        )
        async with self._locks.hold(call.id):
            await self._store.upsert_participant(call.id, caller_id, ParticipantState.JOINED)
            frame = build_frame(
                OutboundEvent.GROUP_CALL_INCOMING,
                GroupCallIncomingOut(
                    call_id=call.id,
                    group_id=group_id,
                    initiator_id=caller_id,
                    room_token=room_token,
                    media=media,
                ),
            )
            await self._registry.push_to_users(members - {caller_id}, frame)
        logger.info("Group call %s started in group %s by user %s", call.id, group_id, caller_id)
        return call

    async def join(self, user_id: int, call_id: int, *, origin: str | None = None) -> CallRecord:
        async with self._locks.hold(call_id):
            call = await self._load(call_id)
            self._require_kind(call, CallKind.GROUP)
            members = await self._members_of_group(call.conversation_id or 0)
            if user_id not in members:
                raise NotAMemberError(f"user {user_id} is not in group {call.conversation_id}")
            if self.is_concluded(call) or call.state != CallState.ACTIVE:
                raise InvalidStateError(f"group call {call_id} is not active")
            await self._store.upsert_participant(call_id, user_id, ParticipantState.JOINED)
            frame = build_frame(
                OutboundEvent.GROUP_CALL_JOINED,
                GroupCallParticipantOut(call_id=call_id, group_id=call.conversation_id or 0, user_id=user_id),
            )
            await self._registry.push_to_users(members, frame, exclude=origin)
        logger.info("User %s joined group call %s", user_id, call_id)
        return call

    async def leave(
        self,
        user_id: int,
        call_id: int,
        duration_seconds: int | None = None,
        *,
        origin: str | None = None,
    ) -> CallRecord:
        """Mark ``user_id`` as left; ends the call when nobody remains joined.

        Leaving a call one is not joined to is a no-op. ``duration_seconds``
        defaults to the time since the participant joined.
        """
        async with self._locks.hold(call_id):
            call = await self._load(call_id)
            self._require_kind(call, CallKind.GROUP)
            if self.is_concluded(call):
                return call
            participants = {p.user_id: p for p in await self._store.list_participants(call_id)}
            me = participants.get(user_id)
            if me is None or me.state != ParticipantState.JOINED:
                return call
            if duration_seconds is None:
                duration_seconds = elapsed_seconds(me.joined_at)

            await self._store.upsert_participant(call_id, user_id, ParticipantState.LEFT, duration_seconds)
            group_id = call.conversation_id or 0
            members = await self._store.conversation_members(group_id)
            frame = build_frame(
                OutboundEvent.GROUP_CALL_LEFT,
                GroupCallParticipantOut(
                    call_id=call_id,
                    group_id=group_id,
                    user_id=user_id,
                    duration_seconds=duration_seconds,
                ),
            )
            await self._registry.push_to_users(members, frame, exclude=origin)
            logger.info("User %s left group call %s", user_id, call_id)

            still_joined = [
                p for uid, p in participants.items()
                if uid != user_id and p.state == ParticipantState.JOINED
            ]
            if still_joined:
                return call

            call = await self._move(
                call,
                CallState.ENDED,
                end_reason=EndReason.LAST_PARTICIPANT_LEFT.value,
                ended_by=user_id,
                duration_seconds=elapsed_seconds(call.created_at),
            )
            ended = build_frame(
                OutboundEvent.GROUP_CALL_ENDED,
                GroupCallEndedOut(
                    call_id=call_id,
                    group_id=group_id,
                    reason=EndReason.LAST_PARTICIPANT_LEFT.value,
                ),
            )
            await self._registry.push_to_users(members, ended)
            await self._conclude(call)
        return call

    # Queries

    async def live_calls_for(self, user_id: int) -> list[CallRecord]:
        """ACTIVE calls in which ``user_id`` currently holds a joined seat."""
        live: list[CallRecord] = []
        for call in await self._store.calls_for_user(user_id, [CallState.ACTIVE]):
            if self.is_concluded(call):
                continue
            if call.kind == CallKind.DIRECT:
                live.append(call)
                continue
            for participant in await self._store.list_participants(call.id):
                if participant.user_id == user_id and participant.state == ParticipantState.JOINED:
                    live.append(call)
                    break
        return live

    async def describe(self, call_id: int, viewer_id: int) -> tuple[CallRecord, list[ParticipantRecord]]:
        """Return a call and its participants if ``viewer_id`` may see it."""
        call = await self._load(call_id)
        if call.kind == CallKind.DIRECT:
            self._require_party(call, viewer_id)
        else:
            members = await self._store.conversation_members(call.conversation_id or 0)
            if viewer_id not in members:
                raise NotAMemberError(f"user {viewer_id} is not in group {call.conversation_id}")
        return call, await self._store.list_participants(call_id)

    async def close(self) -> None:
        await self._ring_timers.close()
