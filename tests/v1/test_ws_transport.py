# tests/v1/test_ws_transport.py
"""Tests for the websocket transport adapter."""

import pytest
from fastapi import WebSocketDisconnect

from signalhub.api.ws import WebSocketTransport
from signalhub.services.errors import NotConnectedError


@pytest.mark.asyncio
async def test_send_passes_frame_through(mocker):
    websocket = mocker.AsyncMock()
    transport = WebSocketTransport(websocket)

    await transport.send_json({"event": "presence:online", "data": {"user_id": 1, "online": True}})

    websocket.send_json.assert_awaited_once_with(
        {"event": "presence:online", "data": {"user_id": 1, "online": True}}
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [WebSocketDisconnect(1006), RuntimeError("closed"), OSError("reset")])
async def test_send_failure_becomes_not_connected(mocker, failure):
    websocket = mocker.AsyncMock()
    websocket.send_json.side_effect = failure
    transport = WebSocketTransport(websocket)

    with pytest.raises(NotConnectedError):
        await transport.send_json({"event": "x", "data": {}})
    assert transport.closed

    websocket.send_json.reset_mock()
    with pytest.raises(NotConnectedError):
        await transport.send_json({"event": "x", "data": {}})
    websocket.send_json.assert_not_awaited()
