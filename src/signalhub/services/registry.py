"""Session registry: live connections per user and presence propagation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from signalhub.schemas.events import OutboundEvent, build_frame
from signalhub.schemas.presence import PresenceOut
from signalhub.services.dedup import DeliveryLedger
from signalhub.services.errors import NotConnectedError
from signalhub.services.store import Store
from signalhub.services.timers import Clock, KeyedTasks, sleep_until

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything that can deliver a JSON frame to one client."""

    async def send_json(self, frame: dict[str, Any]) -> None:
        """Send one frame; raise ``NotConnectedError`` if the client is gone."""
        ...


@dataclass(eq=False)
class Connection:
    """One authenticated transport owned by a user.

    Compared and hashed by identity, so it can be kept in sets.
    """

    user_id: int
    transport: Transport
    ledger: DeliveryLedger = field(default_factory=DeliveryLedger)
    connection_id: str = field(default_factory=lambda: uuid4().hex)
    authenticated: bool = True
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_activity = time.time()

    async def push(
        self,
        frame: dict[str, Any],
        *,
        conversation_id: int | None = None,
        message_id: int | None = None,
        event_key: Any = None,
    ) -> bool:
        """Deliver ``frame`` unless this connection already received it.

        Returns whether the frame was handed to the transport. Transport
        failures are swallowed: fan-out is best effort per connection.
        """
        tracked = conversation_id is not None or event_key is not None
        if tracked and not self.ledger.admit(
            conversation_id, message_id=message_id, event_key=event_key
        ):
            logger.debug(
                "Suppressed duplicate %s on connection %s", frame.get("event"), self.connection_id
            )
            return False
        try:
            await self.transport.send_json(frame)
        except NotConnectedError:
            logger.debug("Connection %s is gone; dropped %s", self.connection_id, frame.get("event"))
            return False
        return True


class SessionRegistry:
    """Maps user ids to their live connections and announces presence.

    The first connection of a user announces ``presence:online`` to everyone
    sharing a conversation with them. Losing the last connection does not
    announce ``presence:offline`` right away: a per-user debounce timer fires
    it only if no connection comes back first.
    """

    def __init__(
        self,
        store: Store,
        *,
        offline_delay: float = 5.0,
        tick: float = 1.0,
        dedup_window: int = 256,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._offline_delay = offline_delay
        self._tick = tick
        self._dedup_window = dedup_window
        self._clock = clock
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[int, dict[str, Connection]] = {}
        # Users whose online presence has been announced and not yet withdrawn.
        self._announced: set[int] = set()
        self._offline = KeyedTasks("presence-offline")

    def new_connection(self, user_id: int, transport: Transport) -> Connection:
        """Build a connection whose dedup ledger uses the configured window."""
        return Connection(
            user_id=user_id,
            transport=transport,
            ledger=DeliveryLedger(self._dedup_window),
        )

    async def register(self, user_id: int, connection: Connection) -> str:
        """Add ``connection`` for ``user_id`` and return its connection id."""
        connection.user_id = user_id
        self._connections[connection.connection_id] = connection
        devices = self._by_user.setdefault(user_id, {})
        first = not devices
        devices[connection.connection_id] = connection
        logger.debug("Registered connection %s for user %s", connection.connection_id, user_id)

        if first:
            if self._offline.cancel(user_id):
                logger.debug("Offline announcement for user %s cancelled by reconnect", user_id)
            if user_id not in self._announced:
                self._announced.add(user_id)
                logger.info("User %s is online", user_id)
                await self._broadcast_presence(user_id, online=True)
        return connection.connection_id

    def unregister(self, connection_id: str) -> Connection | None:
        """Remove a connection. Unknown ids are logged and ignored."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            logger.warning("Ignoring unregister of unknown connection %s", connection_id)
            return None

        devices = self._by_user.get(connection.user_id, {})
        devices.pop(connection_id, None)
        if not devices:
            self._by_user.pop(connection.user_id, None)
            deadline = self._clock() + self._offline_delay
            self._offline.spawn(connection.user_id, self._announce_offline(connection.user_id, deadline))
        logger.debug("Unregistered connection %s of user %s", connection_id, connection.user_id)
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections_for(self, user_id: int) -> frozenset[Connection]:
        return frozenset(self._by_user.get(user_id, {}).values())

    def is_online(self, user_id: int) -> bool:
        return bool(self._by_user.get(user_id))

    def online_users(self) -> list[int]:
        return sorted(self._by_user)

    def offline_pending(self, user_id: int) -> bool:
        return self._offline.active(user_id)

    async def push_to_users(
        self,
        user_ids: Iterable[int],
        frame: dict[str, Any],
        *,
        exclude: str | None = None,
        conversation_id: int | None = None,
        message_id: int | None = None,
        event_key: Any = None,
    ) -> int:
        """Push ``frame`` to every live connection of ``user_ids``.

        ``exclude`` skips one connection (the originator of a command).
        Returns the number of connections the frame was delivered to.
        """
        targets = [
            connection
            for user_id in dict.fromkeys(user_ids)
            for connection in self._by_user.get(user_id, {}).values()
            if connection.connection_id != exclude
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(
                connection.push(
                    frame,
                    conversation_id=conversation_id,
                    message_id=message_id,
                    event_key=event_key,
                )
                for connection in targets
            )
        )
        return sum(1 for delivered in results if delivered)

    async def _announce_offline(self, user_id: int, deadline: float) -> None:
        await sleep_until(deadline, tick=self._tick, clock=self._clock)
        if self.is_online(user_id):
            return
        self._announced.discard(user_id)
        logger.info("User %s is offline", user_id)
        await self._store.touch_last_seen(user_id)
        user = await self._store.get_user(user_id)
        await self._broadcast_presence(
            user_id,
            online=False,
            last_seen_at=user.last_seen_at if user is not None else None,
        )

    async def _broadcast_presence(self, user_id: int, *, online: bool, last_seen_at: Any = None) -> None:
        peers = await self._store.peers_of(user_id)
        event = OutboundEvent.PRESENCE_ONLINE if online else OutboundEvent.PRESENCE_OFFLINE
        frame = build_frame(event, PresenceOut(user_id=user_id, online=online, last_seen_at=last_seen_at))
        delivered = await self.push_to_users(peers, frame)
        logger.debug("Presence %s for user %s delivered to %d connections", event.value, user_id, delivered)

    async def close(self) -> None:
        await self._offline.close()
