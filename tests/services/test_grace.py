"""Tests for reconnection grace windows during calls."""

import asyncio

import pytest

from signalhub.models import CallMedia, CallState, ParticipantState
from signalhub.services.grace import GracePhase, GraceWindows


async def _active_call(hub, open_connection, caller, target):
    caller_conn, caller_transport = await open_connection(caller.id)
    target_conn, target_transport = await open_connection(target.id)
    call = await hub.calls.invite(caller.id, target.id, "room", CallMedia.VIDEO)
    await hub.calls.answer(target.id, call.id)
    return call, (caller_conn, caller_transport), (target_conn, target_transport)


@pytest.mark.asyncio
async def test_windows_walk_through_both_phases(clock, eventually):
    events: list[str] = []

    async def reconnecting() -> None:
        events.append("reconnecting")

    async def expired() -> None:
        events.append("expired")

    windows = GraceWindows(delay=5, grace=20, tick=0.005, clock=clock)
    windows.watch("k", on_reconnecting=reconnecting, on_expired=expired)
    assert windows.phase("k") == GracePhase.DELAY

    clock.advance(5.5)
    await eventually(lambda: events == ["reconnecting"])
    assert windows.phase("k") == GracePhase.RECONNECTING

    clock.advance(20)
    await eventually(lambda: events == ["reconnecting", "expired"])
    assert windows.phase("k") is None
    await windows.close()


@pytest.mark.asyncio
async def test_resolving_stops_the_window(clock):
    fired: list[str] = []

    async def record() -> None:
        fired.append("fired")

    windows = GraceWindows(delay=5, grace=20, tick=0.005, clock=clock)
    windows.watch("k", on_reconnecting=record, on_expired=record)

    assert windows.resolve("k") == GracePhase.DELAY
    assert windows.resolve("k") is None
    clock.advance(100)
    await asyncio.sleep(0.03)
    assert fired == []
    await windows.close()


@pytest.mark.asyncio
async def test_failing_callback_is_contained(clock, eventually, caplog):
    reached: list[str] = []

    async def broken() -> None:
        raise RuntimeError("boom")

    async def expired() -> None:
        reached.append("expired")

    windows = GraceWindows(delay=1, grace=1, tick=0.005, clock=clock)
    windows.watch("k", on_reconnecting=broken, on_expired=expired)
    clock.advance(10)

    await eventually(lambda: reached == ["expired"])
    assert "Grace callback failed" in caplog.text
    await windows.close()


@pytest.mark.asyncio
async def test_blip_inside_delay_is_invisible(hub, open_connection, clock, direct, alice, bob):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await hub.disconnect(alice_conn)
    assert hub.grace.watching(call.id, alice.id) == GracePhase.DELAY

    clock.advance(2)
    await open_connection(alice.id)
    clock.advance(60)
    await asyncio.sleep(0.03)

    assert hub.grace.watching(call.id, alice.id) is None
    assert bob_transport.payloads("call:peer-reconnecting") == []
    assert bob_transport.payloads("call:peer-resumed") == []
    assert (await hub.store.get_call(call.id)).state == CallState.ACTIVE


@pytest.mark.asyncio
async def test_reconnect_racing_disconnect_keeps_call(hub, open_connection, clock, direct, alice, bob):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await asyncio.gather(hub.disconnect(alice_conn), open_connection(alice.id))
    assert hub.registry.is_online(alice.id)
    assert hub.grace.watching(call.id, alice.id) is None

    clock.advance(60)
    await asyncio.sleep(0.03)
    assert bob_transport.payloads("call:peer-reconnecting") == []
    assert bob_transport.payloads("call:ended-by-connection") == []
    assert (await hub.store.get_call(call.id)).state == CallState.ACTIVE
    assert await hub.store.pending_terminations_for(alice.id) == []


@pytest.mark.asyncio
async def test_window_of_online_user_never_fires(
    hub, open_connection, clock, eventually, make_transport, direct, alice, bob
):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await hub.disconnect(alice_conn)
    assert hub.grace.watching(call.id, alice.id) == GracePhase.DELAY
    # Registered without going through the hub, so the window stays open.
    await hub.registry.register(alice.id, hub.registry.new_connection(alice.id, make_transport()))

    clock.advance(6)
    await eventually(lambda: hub.grace.watching(call.id, alice.id) is None)
    clock.advance(60)
    await asyncio.sleep(0.03)

    assert bob_transport.payloads("call:peer-reconnecting") == []
    assert bob_transport.payloads("call:ended-by-connection") == []
    assert (await hub.store.get_call(call.id)).state == CallState.ACTIVE


@pytest.mark.asyncio
async def test_disconnect_of_online_user_opens_nothing(hub, open_connection, direct, alice, bob):
    call, _, _ = await _active_call(hub, open_connection, alice, bob)

    assert await hub.grace.on_disconnect(alice.id) == 0
    assert hub.grace.watching(call.id, alice.id) is None


@pytest.mark.asyncio
async def test_reconnect_during_grace_resumes(hub, open_connection, clock, eventually, direct, alice, bob):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await hub.disconnect(alice_conn)
    clock.advance(6)
    await eventually(lambda: bool(bob_transport.payloads("call:peer-reconnecting")))
    assert bob_transport.payloads("call:peer-reconnecting") == [{"call_id": call.id, "user_id": alice.id}]

    await open_connection(alice.id)

    assert bob_transport.payloads("call:peer-resumed") == [{"call_id": call.id, "user_id": alice.id}]
    clock.advance(60)
    await asyncio.sleep(0.03)
    assert bob_transport.payloads("call:ended-by-connection") == []
    assert (await hub.store.get_call(call.id)).state == CallState.ACTIVE


@pytest.mark.asyncio
async def test_expired_grace_ends_call_and_queues_notice(
    hub, open_connection, clock, eventually, direct, alice, bob
):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await hub.disconnect(alice_conn)
    clock.advance(6)
    await eventually(lambda: bool(bob_transport.payloads("call:peer-reconnecting")))
    clock.advance(20)
    await eventually(lambda: bool(bob_transport.payloads("call:ended-by-connection")))

    ended = bob_transport.payloads("call:ended-by-connection")
    assert len(ended) == 1
    assert ended[0]["ended_by"] == alice.id
    assert ended[0]["reason"] == "connection_lost"
    stored = await hub.store.get_call(call.id)
    assert stored.state == CallState.ENDED
    assert stored.end_reason == "connection_lost"

    await eventually(lambda: bool(bob_transport.payloads("message:new")))
    notice = bob_transport.payloads("message:new")[-1]
    assert notice["system_event"] == "call_ended_by_connection"
    assert notice["conversation_id"] == direct.id

    pending = await hub.store.pending_terminations_for(alice.id)
    assert [(p.call_id, p.peer_notified) for p in pending] == [(call.id, True)]

    _, alice_again = await open_connection(alice.id)
    assert [p["call_id"] for p in alice_again.payloads("call:ended-by-connection")] == [call.id]
    assert await hub.store.pending_terminations_for(alice.id) == []


@pytest.mark.asyncio
async def test_suspended_process_resolves_on_resume(hub, open_connection, clock, eventually, direct, alice, bob):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await hub.disconnect(alice_conn)
    clock.advance(3600)

    await eventually(lambda: bool(bob_transport.payloads("call:ended-by-connection")))
    assert bob_transport.events().index("call:peer-reconnecting") < bob_transport.events().index(
        "call:ended-by-connection"
    )
    assert (await hub.store.get_call(call.id)).state == CallState.ENDED


@pytest.mark.asyncio
async def test_hangup_during_grace_cancels_window(hub, open_connection, clock, direct, alice, bob):
    call, (alice_conn, _), (_, bob_transport) = await _active_call(hub, open_connection, alice, bob)

    await hub.disconnect(alice_conn)
    await hub.calls.end(bob.id, call.id, duration_seconds=10)

    assert hub.grace.watching(call.id, alice.id) is None
    clock.advance(3600)
    await asyncio.sleep(0.03)
    assert bob_transport.payloads("call:ended-by-connection") == []
    assert await hub.store.pending_terminations_for(alice.id) == []


@pytest.mark.asyncio
async def test_other_device_keeps_call_alive(hub, open_connection, direct, alice, bob):
    call, (alice_conn, _), _ = await _active_call(hub, open_connection, alice, bob)
    await open_connection(alice.id)

    await hub.disconnect(alice_conn)

    assert hub.grace.watching(call.id, alice.id) is None


@pytest.mark.asyncio
async def test_group_participant_leaves_after_grace(
    hub, open_connection, clock, eventually, group, alice, bob, carol
):
    alice_conn, _ = await open_connection(alice.id)
    bob_conn, bob_transport = await open_connection(bob.id)
    _, carol_transport = await open_connection(carol.id)
    call = await hub.calls.invite_group(alice.id, group.id, "room", CallMedia.AUDIO)
    await hub.calls.join(bob.id, call.id, origin=bob_conn.connection_id)

    await hub.disconnect(alice_conn)
    clock.advance(6)
    await eventually(lambda: bool(bob_transport.payloads("call:peer-reconnecting")))
    assert len(carol_transport.payloads("call:peer-reconnecting")) == 1

    clock.advance(20)
    await eventually(lambda: bool(bob_transport.payloads("group:call-left")))

    assert bob_transport.payloads("group:call-left")[0]["user_id"] == alice.id
    states = {p.user_id: p.state for p in await hub.store.list_participants(call.id)}
    assert states[alice.id] == ParticipantState.LEFT
    assert (await hub.store.get_call(call.id)).state == CallState.ACTIVE
