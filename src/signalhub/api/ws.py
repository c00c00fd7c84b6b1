"""WebSocket endpoint serving the bidirectional event channel.

One handler task serves one connection: it authenticates the handshake,
registers the connection with the hub, then reads frames and answers each
with at most one acknowledgement until the socket closes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from signalhub.core.security import decode_access_token
from signalhub.schemas.events import Ack
from signalhub.services.errors import ErrorCode, NotAuthenticatedError, NotConnectedError
from signalhub.services.hub import SignalHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


class WebSocketTransport:
    """Serializes sends on one websocket and maps failures to ``NotConnectedError``."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._lock = asyncio.Lock()
        self.closed = False

    async def send_json(self, frame: dict[str, Any]) -> None:
        if self.closed:
            raise NotConnectedError("websocket is closed")
        async with self._lock:
            try:
                await self._websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                self.closed = True
                raise NotConnectedError(str(exc)) from exc


@router.websocket("/ws")
async def event_channel(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    hub: SignalHub | None = getattr(websocket.app.state, "hub", None)
    if hub is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    try:
        user_id = decode_access_token(token or "")
    except NotAuthenticatedError:
        logger.debug("Rejected event channel handshake with an invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if await hub.store.get_user(user_id) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    transport = WebSocketTransport(websocket)
    connection = await hub.connect(user_id, transport)
    try:
        while True:
            try:
                raw = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except (ValueError, TypeError, KeyError):
                ack: dict[str, Any] | None = Ack.fail(
                    None, ErrorCode.INVALID_PAYLOAD, "frame is not a JSON text message"
                ).to_frame()
            else:
                ack = await hub.handle(connection, raw)
            if ack is not None:
                await transport.send_json(ack)
    except NotConnectedError:
        logger.debug("Event channel %s lost while acknowledging", connection.connection_id)
    except Exception:
        logger.exception("Event channel for user %s failed", user_id)
    finally:
        transport.closed = True
        await hub.disconnect(connection)
