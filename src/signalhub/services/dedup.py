"""Per-connection duplicate-event suppression.

Each live connection keeps, per conversation, the highest message id already
pushed to it plus a bounded window of recently pushed ids. A replayed push of
the same underlying event is dropped before it reaches the transport.
"""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass, field


class RecentIdWindow:
    """Fixed-capacity set of recently seen keys with FIFO eviction.

    Keys live in a preallocated ring (the arena) and a dict maps each key to
    its slot (the index), so membership, insertion and eviction are O(1) and
    memory stays bounded no matter how many events flow through.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._arena: list[Hashable | None] = [None] * capacity
        self._index: dict[Hashable, int] = {}
        self._head = 0

    @property
    def capacity(self) -> int:
        return len(self._arena)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._index

    def __len__(self) -> int:
        return len(self._index)

    def add(self, key: Hashable) -> Hashable | None:
        """Insert ``key`` and return the key it evicted, if any."""
        if key in self._index:
            return None
        evicted = self._arena[self._head]
        if evicted is not None:
            del self._index[evicted]
        self._arena[self._head] = key
        self._index[key] = self._head
        self._head = (self._head + 1) % len(self._arena)
        return evicted


@dataclass
class _ConversationLedger:
    capacity: int
    high_water: int = 0
    # Highest message id pushed out of the window; anything at or below it is stale.
    floor: int = 0
    ids: RecentIdWindow = field(init=False)
    events: RecentIdWindow = field(init=False)

    def __post_init__(self) -> None:
        self.ids = RecentIdWindow(self.capacity)
        self.events = RecentIdWindow(self.capacity)

    def admit_message(self, message_id: int) -> bool:
        if message_id > self.high_water:
            self._remember(message_id)
            self.high_water = message_id
            return True
        if message_id in self.ids or message_id <= self.floor:
            return False
        # Older than the high-water mark but still inside the window: a gap fill.
        self._remember(message_id)
        return True

    def admit_event(self, event_key: Hashable) -> bool:
        if event_key in self.events:
            return False
        self.events.add(event_key)
        return True

    def _remember(self, message_id: int) -> None:
        evicted = self.ids.add(message_id)
        if isinstance(evicted, int) and evicted > self.floor:
            self.floor = evicted


class DeliveryLedger:
    """Tracks what one connection has already been sent, per conversation."""

    def __init__(self, window_size: int = 256) -> None:
        self._window_size = window_size
        # Keyed by conversation id; None holds events outside any conversation.
        self._conversations: dict[int | None, _ConversationLedger] = {}

    def admit(
        self,
        conversation_id: int | None,
        *,
        message_id: int | None = None,
        event_key: Hashable | None = None,
    ) -> bool:
        """Return True if the event is new for this connection and record it.

        ``message_id`` applies the ordered high-water rule used for new
        messages; ``event_key`` is checked against the recent-event window only.
        """
        ledger = self._conversations.get(conversation_id)
        if ledger is None:
            ledger = self._conversations[conversation_id] = _ConversationLedger(self._window_size)
        if message_id is not None:
            return ledger.admit_message(message_id)
        if event_key is not None:
            return ledger.admit_event(event_key)
        return True

    def high_water(self, conversation_id: int) -> int:
        ledger = self._conversations.get(conversation_id)
        return ledger.high_water if ledger is not None else 0

    def forget(self, conversation_id: int) -> None:
        self._conversations.pop(conversation_id, None)
