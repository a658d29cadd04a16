from __future__ import annotations

import asyncio

import pytest

from huddle.monitoring.metrics import kicks_detected_total
from huddle.presence import paths
from huddle.rooms import (
    AlreadyInRoom,
    ConnectionState,
    NotRoomCreator,
    RoomFull,
    RoomLimits,
    RoomNotFound,
    RoomTimings,
    SessionJournal,
    SoundKind,
)
from huddle.rooms import constants


async def _member_ids(store, room_id: str) -> list[str]:
    snapshot = await store.read(paths.members_path(room_id))
    return sorted(snapshot.value or {})


@pytest.mark.anyio("asyncio")
async def test_two_clients_see_each_other_join_and_leave(make_client, wait_until) -> None:
    alice, alice_store, alice_events = await make_client("Alice", account_id="acct-a")
    bob, _, bob_events = await make_client("Bob", account_id="acct-b")

    summary = await alice.create_room("Standup")
    assert summary.is_creator is True
    assert alice.machine.state is ConnectionState.JOINED

    bob_handle = await bob.join_room(summary.id)
    assert bob_handle is not None

    await wait_until(lambda: len(alice.members) == 2 and len(bob.members) == 2)
    assert ("create", (alice.machine.member_id, True)) in bob_events.peers
    assert alice_events.sounds[-1] is SoundKind.JOIN

    assert await bob.leave_room() is True
    assert bob.machine.state is ConnectionState.IDLE
    assert bob_events.messages()[-1] == constants.MSG_LEFT_ROOM

    await wait_until(lambda: len(alice.members) == 1)
    assert alice_events.sounds[-1] is SoundKind.LEAVE
    assert await _member_ids(alice_store, summary.id) == [alice.machine.member_id]


@pytest.mark.anyio("asyncio")
async def test_join_is_idempotent_and_exclusive(make_client) -> None:
    alice, store, _ = await make_client("Alice", account_id="acct-a")
    summary = await alice.create_room("Room")
    await alice.registrar.create_room("other", "Other", "acct-a")

    first = alice.machine.handle
    again = await alice.join_room(summary.id)
    assert again == first
    assert await _member_ids(store, summary.id) == [first.member_id]

    with pytest.raises(AlreadyInRoom):
        await alice.join_room("other")
    assert alice.machine.room_id == summary.id


@pytest.mark.anyio("asyncio")
async def test_join_rejected_while_lock_held(make_client) -> None:
    alice, _, _ = await make_client("Alice", account_id="acct-a")
    await alice.registrar.create_room("busy", "Busy", "acct-a")

    with alice.machine.guard():
        assert await alice.join_room("busy") is None

    assert alice.machine.state is ConnectionState.IDLE


@pytest.mark.anyio("asyncio")
async def test_full_room_and_missing_room_leave_session_idle(make_client) -> None:
    limits = RoomLimits(max_members=1)
    alice, _, _ = await make_client("Alice", account_id="acct-a", limits=limits)
    bob, _, bob_events = await make_client("Bob", account_id="acct-b", limits=limits)
    summary = await alice.create_room("Tiny")

    with pytest.raises(RoomFull):
        await bob.join_room(summary.id)
    assert bob.machine.state is ConnectionState.IDLE
    assert bob.machine.join_locked is False

    with pytest.raises(RoomNotFound):
        await bob.join_room("nowhere")
    assert bob.machine.state is ConnectionState.IDLE
    assert bob_events.messages()[-1] == "Room not found"


@pytest.mark.anyio("asyncio")
async def test_removed_member_is_kicked_exactly_once(make_client, wait_until) -> None:
    alice, _, alice_events = await make_client("Alice", account_id="acct-a")
    bob, bob_store, _ = await make_client("Bob", account_id="acct-b")
    summary = await alice.create_room("Room")
    await bob.join_room(summary.id)
    await wait_until(lambda: len(bob.members) == 2)
    before = kicks_detected_total.value()

    await bob_store.remove(paths.member_path(summary.id, alice.machine.member_id))

    await wait_until(lambda: alice.machine.state is ConnectionState.IDLE)
    assert alice.machine.intentional_leave is True
    await asyncio.sleep(0.1)
    assert kicks_detected_total.value() == before + 1
    assert alice_events.messages().count(constants.MSG_KICKED) == 1


@pytest.mark.anyio("asyncio")
async def test_reconnect_replaces_member_record(make_client, wait_until) -> None:
    alice, store, events = await make_client("Alice", account_id="acct-a")
    summary = await alice.create_room("Room")
    old_member = alice.machine.member_id

    store.go_offline()
    await store.flush()
    assert constants.MSG_CONNECTION_LOST in events.messages()

    await store.go_online()
    await wait_until(lambda: constants.MSG_CONNECTION_RESTORED in events.messages())
    assert alice.machine.state is ConnectionState.JOINED
    assert alice.machine.member_id != old_member

    assert await _member_ids(store, summary.id) == [alice.machine.member_id]
    assert alice.machine.reconnect_attempts == 0


@pytest.mark.anyio("asyncio")
async def test_reconnect_gives_up_after_bounded_attempts(make_client, database, wait_until) -> None:
    alice, store, events = await make_client("Alice", account_id="acct-a")
    summary = await alice.create_room("Room")
    database.inject_failure("write_child", paths.members_path(summary.id), times=10)

    store.go_offline()
    await store.go_online()
    await wait_until(lambda: alice.machine.state is ConnectionState.IDLE)

    attempts = [message for message in events.messages() if message.startswith("Reconnecting")]
    assert attempts == [
        "Reconnecting... (attempt 1/3)",
        "Reconnecting... (attempt 2/3)",
        "Reconnecting... (attempt 3/3)",
    ]
    assert events.messages()[-1] == constants.MSG_RECONNECT_EXHAUSTED
    assert alice.machine.reconnect_attempts == 0
    assert alice.reconnector.retry_pending is False
    assert await _member_ids(store, summary.id) == []


@pytest.mark.anyio("asyncio")
async def test_failed_first_reconnect_attempt_still_discards_old_record(
    make_client, database, wait_until
) -> None:
    alice, store, events = await make_client("Alice", account_id="acct-a")
    summary = await alice.create_room("Room")
    old_member = alice.machine.member_id

    store.go_offline()
    database.inject_failure("read", paths.room_path(summary.id), times=1)
    await store.go_online()
    await wait_until(lambda: constants.MSG_CONNECTION_RESTORED in events.messages())

    assert "Reconnecting... (attempt 2/3)" in events.messages()
    new_member = alice.machine.member_id
    assert new_member != old_member
    assert await _member_ids(store, summary.id) == [new_member]
    assert list(database.hooks_for(store.client_id)) == [paths.member_path(summary.id, new_member)]
    assert alice.reconnector.stale_handle is None


@pytest.mark.anyio("asyncio")
async def test_reconnect_to_deleted_room_leaves(make_client, wait_until) -> None:
    alice, store, events = await make_client("Alice", account_id="acct-a")
    bob, bob_store, _ = await make_client("Bob", account_id="acct-b")
    summary = await alice.create_room("Room")

    store.go_offline()
    await bob_store.remove(paths.room_path(summary.id))
    await store.go_online()

    await wait_until(lambda: alice.machine.state is ConnectionState.IDLE)
    assert constants.MSG_ROOM_DELETED in events.messages()


@pytest.mark.anyio("asyncio")
async def test_connectivity_flaps_after_leave_do_not_reconnect(make_client) -> None:
    alice, store, events = await make_client("Alice", account_id="acct-a")
    await alice.create_room("Room")
    await alice.leave_room()

    store.go_offline()
    await store.go_online()
    await store.flush()

    assert alice.machine.state is ConnectionState.IDLE
    assert not [message for message in events.messages() if message.startswith("Reconnecting")]
    assert constants.MSG_CONNECTION_LOST not in events.messages()


@pytest.mark.anyio("asyncio")
async def test_restart_after_crash_leaves_single_member_record(make_client, database, tmp_path) -> None:
    journal_path = tmp_path / "session.json"
    alice, store, _ = await make_client("Alice", account_id="acct-a", journal=SessionJournal(journal_path))
    summary = await alice.create_room("Room")
    crashed_member = alice.machine.member_id
    assert journal_path.exists()

    store.crash()
    restarted, new_store, _ = await make_client(
        "Alice-restarted", account_id="acct-a", journal=SessionJournal(journal_path)
    )
    await restarted.join_room(summary.id)

    members = await _member_ids(new_store, summary.id)
    assert members == [restarted.machine.member_id]
    assert crashed_member not in members


@pytest.mark.anyio("asyncio")
async def test_signals_are_delivered_once_and_deleted(make_client, wait_until) -> None:
    alice, alice_store, alice_events = await make_client("Alice", account_id="acct-a")
    bob, _, _ = await make_client("Bob", account_id="acct-b")
    summary = await alice.create_room("Room")
    await bob.join_room(summary.id)

    await bob.send_signal(alice.machine.member_id, {"type": "offer", "sdp": "v=0"})

    await wait_until(lambda: len(alice_events.signals) == 1)
    envelope = alice_events.signals[0]
    assert envelope.sender == bob.machine.member_id
    assert envelope.signal == {"type": "offer", "sdp": "v=0"}
    assert ("create", (bob.machine.member_id, False)) in alice_events.peers
    await wait_until(lambda: alice_store.database.get(paths.signals_path(summary.id)) is None)


@pytest.mark.anyio("asyncio")
async def test_chat_messages_reach_room_and_first_joiner_clears_history(make_client, wait_until) -> None:
    alice, alice_store, alice_events = await make_client("Alice", account_id="acct-a")
    bob, _, _ = await make_client("Bob", account_id="acct-b")
    await alice.registrar.create_room("chat", "Chat", "acct-a")
    await alice_store.write_child(paths.messages_path("chat"), {"author": "old", "text": "stale", "timestamp": 1})

    await alice.join_room("chat")
    assert alice_store.database.get(paths.messages_path("chat")) is None
    assert alice_events.emitted("chat_cleared") == [{"room_id": "chat"}]

    await bob.join_room("chat")
    message_id = await alice.send_message("hello")

    await wait_until(lambda: len(bob.chat_log) == 1)
    assert bob.chat_log.as_list()[0]["id"] == message_id
    assert bob.chat_log.as_list()[0]["text"] == "hello"


@pytest.mark.anyio("asyncio")
async def test_member_bursts_settle_once_with_final_snapshot(make_client) -> None:
    slow = RoomTimings(members_debounce=0.2, reconnect_backoff=0.02, intentional_leave_cooldown=0.1)
    alice, alice_store, alice_events = await make_client("Alice", account_id="acct-a", timings=slow)
    bob, _, _ = await make_client("Bob", account_id="acct-b")
    summary = await alice.create_room("Room")
    await bob.join_room(summary.id)
    await alice_store.flush()
    await alice.dispatcher.settled()
    alice_events.events.clear()

    for index in range(10):
        await bob.set_muted(index % 2 == 0)
    await alice_store.flush()
    await alice.dispatcher.settled()

    settled = alice_events.emitted("members")
    assert len(settled) == 1
    assert settled[0]["members"][bob.machine.member_id]["mute"] is False


@pytest.mark.anyio("asyncio")
async def test_rooms_directory_lists_visible_rooms(make_client) -> None:
    alice, _, _ = await make_client("Alice", account_id="acct-a")
    bob, _, _ = await make_client("Bob", account_id="acct-b")
    summary = await alice.create_room("Visible")

    assert [room.id for room in await alice.list_rooms(force=True)] == [summary.id]
    assert await bob.list_rooms(force=True) == []

    await bob.join_room(summary.id)
    rooms = await bob.list_rooms(force=True)
    assert [(room.id, room.member_count, room.is_creator) for room in rooms] == [(summary.id, 2, False)]


@pytest.mark.anyio("asyncio")
async def test_only_creator_deletes_room(make_client, wait_until) -> None:
    alice, store, alice_events = await make_client("Alice", account_id="acct-a")
    bob, _, bob_events = await make_client("Bob", account_id="acct-b")
    summary = await alice.create_room("Room")
    await bob.join_room(summary.id)
    await wait_until(lambda: len(bob.members) == 2)
    bob_member = bob.machine.member_id

    with pytest.raises(NotRoomCreator):
        await bob.delete_room(summary.id, confirmed=True)
    assert bob.machine.state is ConnectionState.JOINED
    assert bob.machine.member_id == bob_member
    assert constants.MSG_LEFT_ROOM not in bob_events.messages()

    alice_events.confirm_answer = False
    assert await alice.delete_room(summary.id) is False
    assert alice.machine.state is ConnectionState.JOINED

    kicks_before = kicks_detected_total.value()
    assert await alice.delete_room(summary.id, confirmed=True) is True
    assert alice.machine.state is ConnectionState.IDLE
    assert (await store.read(paths.room_path(summary.id))).exists() is False

    await wait_until(lambda: bob.machine.state is ConnectionState.IDLE)
    assert constants.MSG_ROOM_DELETED in bob_events.messages()
    assert constants.MSG_KICKED not in bob_events.messages()
    assert kicks_detected_total.value() == kicks_before


@pytest.mark.anyio("asyncio")
async def test_crashed_peer_is_reaped_without_reconnecting_survivor(make_client, wait_until) -> None:
    alice, _, alice_events = await make_client("Alice", account_id="acct-a")
    bob, bob_store, _ = await make_client("Bob", account_id="acct-b")

    summary = await alice.create_room("Test")
    assert summary.member_count == 1
    assert alice_events.emitted("chat_cleared") == [{"room_id": summary.id}]

    await bob.join_room(summary.id)
    await wait_until(lambda: len(alice.members) == 2 and len(bob.members) == 2)
    assert alice_events.sounds[-1] is SoundKind.JOIN

    bob_store.crash()
    await wait_until(lambda: len(alice.members) == 1, timeout=2.0)

    assert alice_events.sounds[-1] is SoundKind.LEAVE
    assert alice.machine.state is ConnectionState.JOINED
    assert not [message for message in alice_events.messages() if message.startswith("Reconnecting")]
