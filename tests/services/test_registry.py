"""Tests for the session registry and presence propagation."""

import asyncio
import logging

import pytest
import pytest_asyncio

from signalhub.services.registry import SessionRegistry


@pytest_asyncio.fixture
async def registry(store, clock):
    reg = SessionRegistry(store, offline_delay=5.0, tick=0.005, clock=clock)
    try:
        yield reg
    finally:
        await reg.close()


async def _attach(registry, user, make_transport):
    transport = make_transport()
    connection = registry.new_connection(user.id, transport)
    await registry.register(user.id, connection)
    return connection, transport


@pytest.mark.asyncio
async def test_register_tracks_multiple_devices(registry, alice, make_transport):
    phone, _ = await _attach(registry, alice, make_transport)
    laptop, _ = await _attach(registry, alice, make_transport)

    assert registry.is_online(alice.id)
    assert registry.connections_for(alice.id) == frozenset({phone, laptop})
    assert registry.get(phone.connection_id) is phone
    assert registry.online_users() == [alice.id]


@pytest.mark.asyncio
async def test_first_connection_announces_online_once(registry, direct, alice, bob, make_transport):
    _, bob_transport = await _attach(registry, bob, make_transport)

    await _attach(registry, alice, make_transport)
    await _attach(registry, alice, make_transport)

    online = bob_transport.payloads("presence:online")
    assert online == [{"user_id": alice.id, "online": True, "last_seen_at": None}]


@pytest.mark.asyncio
async def test_presence_only_reaches_peers(registry, direct, alice, carol, make_transport):
    _, carol_transport = await _attach(registry, carol, make_transport)
    await _attach(registry, alice, make_transport)
    assert carol_transport.frames == []


@pytest.mark.asyncio
async def test_offline_is_debounced(registry, direct, alice, bob, clock, eventually, make_transport):
    _, bob_transport = await _attach(registry, bob, make_transport)
    connection, _ = await _attach(registry, alice, make_transport)
    bob_transport.clear()

    registry.unregister(connection.connection_id)
    assert not registry.is_online(alice.id)
    assert registry.offline_pending(alice.id)

    clock.advance(4.9)
    await asyncio.sleep(0.05)
    assert bob_transport.frames == []

    clock.advance(0.2)
    await eventually(lambda: bool(bob_transport.payloads("presence:offline")))
    offline = bob_transport.payloads("presence:offline")[0]
    assert offline["user_id"] == alice.id
    assert offline["online"] is False
    assert offline["last_seen_at"] is not None


@pytest.mark.asyncio
async def test_quick_reconnect_suppresses_presence_flap(registry, direct, alice, bob, clock, make_transport):
    _, bob_transport = await _attach(registry, bob, make_transport)
    connection, _ = await _attach(registry, alice, make_transport)
    bob_transport.clear()

    registry.unregister(connection.connection_id)
    clock.advance(2)
    await _attach(registry, alice, make_transport)
    clock.advance(10)
    await asyncio.sleep(0.05)

    assert not registry.offline_pending(alice.id)
    assert bob_transport.frames == []


@pytest.mark.asyncio
async def test_unregister_unknown_connection_is_ignored(registry, caplog):
    with caplog.at_level(logging.WARNING, logger="signalhub.services.registry"):
        assert registry.unregister("does-not-exist") is None
    assert "unknown connection" in caplog.text


@pytest.mark.asyncio
async def test_push_excludes_origin_and_counts_deliveries(registry, alice, bob, make_transport):
    origin, origin_transport = await _attach(registry, alice, make_transport)
    _, other_device = await _attach(registry, alice, make_transport)
    _, bob_transport = await _attach(registry, bob, make_transport)

    frame = {"event": "typing:start", "data": {"conversation_id": 1, "user_id": alice.id}}
    delivered = await registry.push_to_users([alice.id, bob.id, bob.id], frame, exclude=origin.connection_id)

    assert delivered == 2
    assert origin_transport.frames == []
    assert other_device.frames == [frame]
    assert bob_transport.frames == [frame]


@pytest.mark.asyncio
async def test_push_survives_a_dead_transport(registry, alice, bob, make_transport):
    _, alice_transport = await _attach(registry, alice, make_transport)
    _, bob_transport = await _attach(registry, bob, make_transport)
    alice_transport.fail = True

    delivered = await registry.push_to_users([alice.id, bob.id], {"event": "x", "data": {}})

    assert delivered == 1
    assert len(bob_transport.frames) == 1


@pytest.mark.asyncio
async def test_push_drops_duplicate_message(registry, alice, make_transport):
    _, transport = await _attach(registry, alice, make_transport)
    frame = {"event": "message:new", "data": {"id": 3}}

    assert await registry.push_to_users([alice.id], frame, conversation_id=1, message_id=3) == 1
    assert await registry.push_to_users([alice.id], frame, conversation_id=1, message_id=3) == 0
    assert len(transport.frames) == 1
