"""Durable store-and-forward of connection-loss terminations.

When a call is ended because one side went silent, that side is by definition
unreachable. One pending record per call is persisted; on the side's next
successful connection it is replayed once (so the client does not try to
rejoin a call that is already over), a peer that missed the live notice gets
one more attempt, and the record is deleted whatever the outcome.
"""

from __future__ import annotations

import logging

from signalhub.db.time import utcnow
from signalhub.schemas.calls import CallEndedOut
from signalhub.schemas.events import OutboundEvent, build_frame
from signalhub.services.records import PendingTerminationRecord
from signalhub.services.registry import Connection, SessionRegistry
from signalhub.services.store import Store

logger = logging.getLogger(__name__)


class TerminationOutbox:
    def __init__(self, store: Store, registry: SessionRegistry, *, max_age: float = 300.0) -> None:
        self._store = store
        self._registry = registry
        self._max_age = max_age

    async def record(
        self,
        *,
        call_id: int,
        user_id: int,
        peer_user_id: int | None,
        reason: str,
        peer_notified: bool,
    ) -> PendingTerminationRecord:
        """Persist the pending notice for ``call_id``, replacing any earlier one."""
        record = await self._store.put_pending_termination(
            call_id=call_id,
            user_id=user_id,
            peer_user_id=peer_user_id,
            reason=reason,
            peer_notified=peer_notified,
        )
        logger.info(
            "Recorded pending termination for call %s (user %s, peer notified: %s)",
            call_id,
            user_id,
            peer_notified,
        )
        return record

    async def flush(self, connection: Connection) -> int:
        """Replay pending terminations owned by ``connection``'s user.

        Returns how many records were replayed to the connection. Stale records
        are dropped unsent; every record is deleted after its single attempt.
        """
        replayed = 0
        now = utcnow()
        for record in await self._store.pending_terminations_for(connection.user_id):
            age = (now - record.created_at).total_seconds()
            if age > self._max_age:
                logger.warning(
                    "Dropping pending termination for call %s: %.0fs old", record.call_id, age
                )
                await self._store.delete_pending_termination(record.call_id)
                continue

            call = await self._store.get_call(record.call_id)
            payload = CallEndedOut(
                call_id=record.call_id,
                ended_by=record.user_id,
                reason=record.reason,
                duration_seconds=call.duration_seconds if call is not None else None,
            )
            frame = build_frame(OutboundEvent.CALL_ENDED_BY_CONNECTION, payload)
            key = (OutboundEvent.CALL_ENDED_BY_CONNECTION.value, record.call_id)
            if await connection.push(frame, event_key=key):
                replayed += 1
            else:
                logger.warning("Pending termination for call %s could not be replayed", record.call_id)

            if not record.peer_notified and record.peer_user_id is not None:
                delivered = await self._registry.push_to_users([record.peer_user_id], frame, event_key=key)
                if delivered == 0:
                    logger.warning(
                        "Peer %s of call %s still unreachable; giving up", record.peer_user_id, record.call_id
                    )

            await self._store.delete_pending_termination(record.call_id)
        return replayed
