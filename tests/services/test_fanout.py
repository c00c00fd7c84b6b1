"""Tests for the message fan-out engine."""

import asyncio
import base64

import pytest

from signalhub.models import ConversationKind
from signalhub.services.errors import (
    AlreadyDeletedError,
    InvalidPayloadError,
    NotAMemberError,
    NotAuthorError,
    NotFoundError,
)
from signalhub.services.records import DeleteScope


@pytest.mark.asyncio
async def test_send_reaches_members_and_senders_other_devices(hub, open_connection, direct, alice, bob):
    phone, phone_transport = await open_connection(alice.id)
    _, laptop_transport = await open_connection(alice.id)
    _, bob_transport = await open_connection(bob.id)

    message = await hub.fanout.send_message(
        alice.id, direct.id, b"ciphertext", b"iv", origin=phone.connection_id
    )

    assert phone_transport.payloads("message:new") == []
    assert [m["id"] for m in laptop_transport.payloads("message:new")] == [message.id]
    delivered = bob_transport.payloads("message:new")
    assert len(delivered) == 1
    assert delivered[0]["sender_id"] == alice.id
    assert base64.b64decode(delivered[0]["ciphertext"]) == b"ciphertext"


@pytest.mark.asyncio
async def test_non_member_cannot_send(hub, direct, carol):
    with pytest.raises(NotAMemberError):
        await hub.fanout.send_message(carol.id, direct.id, b"x", b"y")


@pytest.mark.asyncio
async def test_messages_arrive_in_store_order(hub, open_connection, group, alice, bob):
    _, bob_transport = await open_connection(bob.id)

    sent = [
        (await hub.fanout.send_message(alice.id, group.id, f"m{n}".encode(), b"iv")).id
        for n in range(5)
    ]

    assert [m["id"] for m in bob_transport.payloads("message:new")] == sent


@pytest.mark.asyncio
async def test_edit_by_author(hub, open_connection, direct, alice, bob):
    _, bob_transport = await open_connection(bob.id)
    message = await hub.fanout.send_message(alice.id, direct.id, b"v1", b"iv")

    edited = await hub.fanout.edit_message(alice.id, message.id, b"v2", b"iv2")

    assert edited.edited_at is not None
    payload = bob_transport.payloads("message:edited")[0]
    assert base64.b64decode(payload["ciphertext"]) == b"v2"
    assert payload["edited_at"] is not None


@pytest.mark.asyncio
async def test_edit_by_someone_else_is_refused(hub, direct, alice, bob):
    message = await hub.fanout.send_message(alice.id, direct.id, b"v1", b"iv")
    with pytest.raises(NotAuthorError):
        await hub.fanout.edit_message(bob.id, message.id, b"v2", b"iv")


@pytest.mark.asyncio
async def test_edit_after_delete_for_all(hub, direct, alice):
    message = await hub.fanout.send_message(alice.id, direct.id, b"v1", b"iv")
    await hub.fanout.delete_message(alice.id, message.id, DeleteScope.ALL)

    with pytest.raises(AlreadyDeletedError):
        await hub.fanout.edit_message(alice.id, message.id, b"v2", b"iv")


@pytest.mark.asyncio
async def test_edit_unknown_message(hub, alice):
    with pytest.raises(NotFoundError):
        await hub.fanout.edit_message(alice.id, 12345, b"v2", b"iv")


@pytest.mark.asyncio
async def test_delete_for_all_tombstones_and_notifies(hub, open_connection, direct, alice, bob):
    _, bob_transport = await open_connection(bob.id)
    message = await hub.fanout.send_message(alice.id, direct.id, b"oops", b"iv")

    await hub.fanout.delete_message(alice.id, message.id, DeleteScope.ALL)

    assert bob_transport.payloads("message:deleted") == [
        {
            "message_id": message.id,
            "conversation_id": direct.id,
            "scope": "ALL",
            "deleted_by": alice.id,
        }
    ]
    history = await hub.fanout.history(bob.id, direct.id)
    assert history.messages[0].deleted_for_all
    assert history.messages[0].ciphertext == b""


@pytest.mark.asyncio
async def test_delete_for_all_twice(hub, direct, alice):
    message = await hub.fanout.send_message(alice.id, direct.id, b"oops", b"iv")
    await hub.fanout.delete_message(alice.id, message.id, DeleteScope.ALL)
    with pytest.raises(AlreadyDeletedError):
        await hub.fanout.delete_message(alice.id, message.id, DeleteScope.ALL)


@pytest.mark.asyncio
async def test_only_sender_deletes_for_all(hub, direct, alice, bob):
    message = await hub.fanout.send_message(alice.id, direct.id, b"mine", b"iv")
    with pytest.raises(NotAuthorError):
        await hub.fanout.delete_message(bob.id, message.id, DeleteScope.ALL)


@pytest.mark.asyncio
async def test_delete_for_me_stays_private(hub, open_connection, direct, alice, bob):
    bob_phone, bob_phone_transport = await open_connection(bob.id)
    _, bob_laptop_transport = await open_connection(bob.id)
    _, alice_transport = await open_connection(alice.id)
    message = await hub.fanout.send_message(alice.id, direct.id, b"hello", b"iv")

    await hub.fanout.delete_message(bob.id, message.id, DeleteScope.ME, origin=bob_phone.connection_id)

    assert alice_transport.payloads("message:deleted") == []
    assert bob_phone_transport.payloads("message:deleted") == []
    assert bob_laptop_transport.payloads("message:deleted")[0]["scope"] == "ME"
    assert (await hub.fanout.history(bob.id, direct.id)).messages == []
    assert len((await hub.fanout.history(alice.id, direct.id)).messages) == 1


@pytest.mark.asyncio
async def test_first_read_notifies_sender_only(hub, open_connection, group, alice, bob, carol):
    _, alice_transport = await open_connection(alice.id)
    _, carol_transport = await open_connection(carol.id)
    message = await hub.fanout.send_message(alice.id, group.id, b"read me", b"iv")

    assert await hub.fanout.mark_read(bob.id, message.id)
    assert not await hub.fanout.mark_read(bob.id, message.id)

    reads = alice_transport.payloads("message:read")
    assert len(reads) == 1
    assert reads[0]["by"] == bob.id
    assert carol_transport.payloads("message:read") == []


@pytest.mark.asyncio
async def test_concurrent_reads_from_two_devices_count_once(hub, open_connection, direct, alice, bob):
    _, alice_transport = await open_connection(alice.id)
    messages = [await hub.fanout.send_message(alice.id, direct.id, b"m", b"iv") for _ in range(20)]

    for message in messages:
        results = await asyncio.gather(
            hub.fanout.mark_read(bob.id, message.id),
            hub.fanout.mark_read(bob.id, message.id),
            return_exceptions=True,
        )
        assert set(results) == {True, False}

    reads = alice_transport.payloads("message:read")
    assert sorted(read["message_id"] for read in reads) == [message.id for message in messages]
    assert await hub.fanout.unread_count(bob.id, direct.id) == 0


@pytest.mark.asyncio
async def test_reading_own_message_records_nothing(hub, direct, alice):
    message = await hub.fanout.send_message(alice.id, direct.id, b"self", b"iv")
    assert not await hub.fanout.mark_read(alice.id, message.id)


@pytest.mark.asyncio
async def test_typing_is_relayed_to_others(hub, open_connection, group, alice, bob):
    _, alice_transport = await open_connection(alice.id)
    _, bob_transport = await open_connection(bob.id)

    await hub.fanout.typing(alice.id, group.id, started=True)
    await hub.fanout.typing(alice.id, group.id, started=False)

    assert alice_transport.payloads("typing:start") == []
    assert bob_transport.payloads("typing:start") == [{"conversation_id": group.id, "user_id": alice.id}]
    assert len(bob_transport.payloads("typing:stop")) == 1


@pytest.mark.asyncio
async def test_history_pages_backwards(hub, direct, alice):
    ids = [
        (await hub.fanout.send_message(alice.id, direct.id, f"m{n}".encode(), b"iv")).id
        for n in range(5)
    ]

    latest = await hub.fanout.history(alice.id, direct.id, limit=2)
    assert [m.id for m in latest.messages] == ids[3:]
    assert latest.has_more

    oldest = await hub.fanout.history(alice.id, direct.id, before=ids[1], limit=2)
    assert [m.id for m in oldest.messages] == ids[:1]
    assert not oldest.has_more


@pytest.mark.asyncio
async def test_history_requires_membership(hub, direct, carol):
    with pytest.raises(NotAMemberError):
        await hub.fanout.history(carol.id, direct.id)


@pytest.mark.asyncio
async def test_unread_count_tracks_reads(hub, direct, alice, bob):
    first = await hub.fanout.send_message(alice.id, direct.id, b"1", b"iv")
    await hub.fanout.send_message(alice.id, direct.id, b"2", b"iv")

    assert await hub.fanout.unread_count(bob.id, direct.id) == 2
    await hub.fanout.mark_read(bob.id, first.id)
    assert await hub.fanout.unread_count(bob.id, direct.id) == 1
    assert await hub.fanout.unread_count(alice.id, direct.id) == 0


@pytest.mark.asyncio
async def test_admin_adds_member(hub, open_connection, make_conversation, alice, bob, carol):
    group = make_conversation(ConversationKind.GROUP, [alice, bob], admin=alice)
    _, bob_transport = await open_connection(bob.id)
    _, carol_transport = await open_connection(carol.id)

    updated = await hub.fanout.add_member(alice.id, group.id, carol.id)

    assert carol.id in updated.member_ids
    expected = {"conversation_id": group.id, "user_id": carol.id, "actor_id": alice.id}
    assert bob_transport.payloads("conversation:member-added") == [expected]
    assert carol_transport.payloads("conversation:member-added") == [expected]


@pytest.mark.asyncio
async def test_non_admin_cannot_add(hub, group, bob, make_user):
    newcomer = make_user("Dave")
    with pytest.raises(NotAuthorError):
        await hub.fanout.add_member(bob.id, group.id, newcomer.id)


@pytest.mark.asyncio
async def test_removed_member_hears_once_then_nothing(hub, open_connection, group, alice, bob, carol):
    _, carol_transport = await open_connection(carol.id)

    await hub.fanout.remove_member(alice.id, group.id, carol.id)
    await hub.fanout.send_message(alice.id, group.id, b"after", b"iv")

    assert len(carol_transport.payloads("conversation:member-removed")) == 1
    assert carol_transport.payloads("message:new") == []
    with pytest.raises(NotAMemberError):
        await hub.fanout.send_message(carol.id, group.id, b"let me in", b"iv")


@pytest.mark.asyncio
async def test_member_may_leave_but_not_remove_others(hub, group, bob, carol):
    with pytest.raises(NotAuthorError):
        await hub.fanout.remove_member(bob.id, group.id, carol.id)

    updated = await hub.fanout.remove_member(bob.id, group.id, bob.id)
    assert bob.id not in updated.member_ids


@pytest.mark.asyncio
async def test_direct_membership_is_fixed(hub, direct, alice, carol):
    with pytest.raises(InvalidPayloadError):
        await hub.fanout.add_member(alice.id, direct.id, carol.id)
