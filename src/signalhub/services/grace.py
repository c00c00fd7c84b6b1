"""Reconnection grace controller.

A transport can drop and come back within seconds without the user meaning
to leave a call. When a user's last connection drops during an ACTIVE call
the controller waits ``delay`` seconds before anything becomes visible, then
tells the peer the user is reconnecting and waits another ``grace`` seconds.
Only after both windows pass without a reconnect is the call terminated.

The windows are wall-clock deadlines; a process that was suspended past them
resolves immediately on resume.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from enum import StrEnum

from signalhub.models import CallKind, CallState, EndReason
from signalhub.schemas.calls import PeerConnectionOut
from signalhub.schemas.events import OutboundEvent, build_frame
from signalhub.services.calls import CallSignaling
from signalhub.services.fanout import SYSTEM_CALL_ENDED_BY_CONNECTION, MessageFanout
from signalhub.services.outbox import TerminationOutbox
from signalhub.services.records import CallRecord
from signalhub.services.registry import Connection, SessionRegistry
from signalhub.services.store import Store
from signalhub.services.timers import Clock, KeyedTasks, sleep_until

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class GracePhase(StrEnum):
    DELAY = "delay"
    RECONNECTING = "reconnecting"
    EXPIRED = "expired"


@dataclass
class _Watch:
    phase: GracePhase
    started_at: float


class GraceWindows:
    """Two-phase, cancellable timers keyed by an arbitrary hashable."""

    def __init__(self, *, delay: float, grace: float, tick: float = 1.0, clock: Clock = time.time) -> None:
        self.delay = delay
        self.grace = grace
        self._tick = tick
        self._clock = clock
        self._watches: dict[Hashable, _Watch] = {}
        self._tasks = KeyedTasks("grace")

    def watch(self, key: Hashable, *, on_reconnecting: Callback, on_expired: Callback) -> None:
        """Start (or restart) the delay window for ``key``."""
        started = self._clock()
        self._watches[key] = _Watch(phase=GracePhase.DELAY, started_at=started)
        self._tasks.spawn(key, self._run(key, started, on_reconnecting, on_expired))

    def phase(self, key: Hashable) -> GracePhase | None:
        watch = self._watches.get(key)
        return watch.phase if watch is not None else None

    def keys(self) -> list[Hashable]:
        return list(self._watches)

    def resolve(self, key: Hashable) -> GracePhase | None:
        """Stop watching ``key``; returns the phase it was in, or None if unwatched."""
        watch = self._watches.pop(key, None)
        self._tasks.cancel(key)
        return watch.phase if watch is not None else None

    async def _run(self, key: Hashable, started: float, on_reconnecting: Callback, on_expired: Callback) -> None:
        delay_deadline = started + self.delay
        await sleep_until(delay_deadline, tick=self._tick, clock=self._clock)
        watch = self._watches.get(key)
        if watch is None:
            return
        watch.phase = GracePhase.RECONNECTING
        logger.info("Grace window for %s: reconnecting", key)
        await self._invoke(key, on_reconnecting)

        await sleep_until(delay_deadline + self.grace, tick=self._tick, clock=self._clock)
        if self._watches.get(key) is not watch:
            return
        watch.phase = GracePhase.EXPIRED
        del self._watches[key]
        logger.info("Grace window for %s expired", key)
        await self._invoke(key, on_expired)

    @staticmethod
    async def _invoke(key: Hashable, callback: Callback) -> None:
        try:
            await callback()
        except Exception:
            logger.exception("Grace callback failed for %s", key)

    async def close(self) -> None:
        self._watches.clear()
        await self._tasks.close()


class ReconnectionGraceController:
    """Applies grace windows to the calls of users who lost every connection.

    Direct calls that expire are ended with ``endByConnectionLoss``; the
    outcome goes to the termination outbox and a system notice is posted to
    the pair's conversation. A group participant that expires simply leaves.
    """

    def __init__(
        self,
        store: Store,
        registry: SessionRegistry,
        calls: CallSignaling,
        fanout: MessageFanout,
        outbox: TerminationOutbox,
        *,
        delay: float = 5.0,
        grace: float = 20.0,
        tick: float = 1.0,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._registry = registry
        self._calls = calls
        self._fanout = fanout
        self._outbox = outbox
        self.windows = GraceWindows(delay=delay, grace=grace, tick=tick, clock=clock)
        calls.add_conclusion_listener(self._on_call_concluded)

    def watching(self, call_id: int, user_id: int) -> GracePhase | None:
        return self.windows.phase((call_id, user_id))

    async def on_disconnect(self, user_id: int) -> int:
        """Open a grace window for every live call of a user who just went dark."""
        calls = await self._calls.live_calls_for(user_id)
        if self._registry.is_online(user_id):
            # A reconnect landed while the calls were being looked up.
            logger.debug("User %s is back online; no grace window opened", user_id)
            return 0
        for call in calls:
            self.windows.watch(
                (call.id, user_id),
                on_reconnecting=lambda call=call: self._reconnecting(call, user_id),
                on_expired=lambda call=call: self._expire(call, user_id),
            )
            logger.info("User %s dropped during call %s; grace window opened", user_id, call.id)
        return len(calls)

    async def on_reconnect(self, user_id: int) -> int:
        """Close the user's grace windows; returns how many calls resumed."""
        resumed = 0
        for key in self.windows.keys():
            call_id, owner = key  # type: ignore[misc]
            if owner != user_id:
                continue
            phase = self.windows.resolve(key)
            if phase != GracePhase.RECONNECTING:
                # Back inside the delay window: nothing was shown, nothing to undo.
                continue
            call = await self._store.get_call(call_id)
            if call is None or call.state != CallState.ACTIVE or self._calls.is_concluded(call):
                continue
            await self._announce(call, user_id, OutboundEvent.CALL_PEER_RESUMED)
            resumed += 1
        return resumed

    async def _announce(self, call: CallRecord, user_id: int, event: OutboundEvent) -> None:
        frame = build_frame(event, PeerConnectionOut(call_id=call.id, user_id=user_id))
        if call.kind == CallKind.DIRECT:
            peer = call.peer_of(user_id)
            audience = [peer] if peer is not None else []
        else:
            audience = sorted(await self._store.conversation_members(call.conversation_id or 0) - {user_id})
        await self._registry.push_to_users(audience, frame)

    async def _reconnecting(self, call: CallRecord, user_id: int) -> None:
        if self._registry.is_online(user_id):
            self.windows.resolve((call.id, user_id))
            return
        await self._announce(call, user_id, OutboundEvent.CALL_PEER_RECONNECTING)

    async def _expire(self, call: CallRecord, user_id: int) -> None:
        if self._registry.is_online(user_id):
            logger.info("User %s is online again; call %s kept", user_id, call.id)
            return
        if call.kind == CallKind.GROUP:
            await self._calls.leave(user_id, call.id)
            return

        termination = await self._calls.end_by_connection_loss(
            user_id, call.id, EndReason.CONNECTION_LOST.value
        )
        if termination is None:
            return
        peer_id = call.peer_of(user_id)
        await self._outbox.record(
            call_id=call.id,
            user_id=user_id,
            peer_user_id=peer_id,
            reason=EndReason.CONNECTION_LOST.value,
            peer_notified=termination.delivered > 0,
        )
        if peer_id is None:
            return
        conversation = await self._store.find_direct_conversation(user_id, peer_id)
        if conversation is not None:
            await self._fanout.post_system_notice(
                conversation.id, user_id, SYSTEM_CALL_ENDED_BY_CONNECTION
            )

    async def _on_call_concluded(self, call: CallRecord) -> None:
        for key in self.windows.keys():
            if key[0] == call.id:  # type: ignore[index]
                self.windows.resolve(key)

    async def close(self) -> None:
        await self.windows.close()
