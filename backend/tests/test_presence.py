from __future__ import annotations

import asyncio
import logging

import pytest
from fastapi.websockets import WebSocketState

from aether.realtime.channels import Channel
from aether.realtime.managers import ClientConnection
from app.services.chat_store import StorageError
from app.services.presence import USER_STATUS_EVENT, PresenceTracker


@pytest.fixture()
def tracker(store, connections) -> PresenceTracker:
    return PresenceTracker(store, connections)


@pytest.mark.anyio("asyncio")
async def test_presence_is_reference_counted(tracker, store, connections, make_user, make_connection):
    alice_id = make_user("alice")
    observer_id = make_user("observer")
    observer = make_connection(observer_id)
    first = make_connection(alice_id)
    second = make_connection(alice_id)
    for connection in (observer, first, second):
        await connections.register(connection, [Channel.user(connection.user_id)])

    assert await tracker.set_online(first) is True
    assert await tracker.set_online(second) is False
    assert await tracker.set_online(second) is False
    assert observer.websocket.events(USER_STATUS_EVENT) == [{"userId": alice_id, "online": True}]
    assert store.require_user(alice_id).online is True

    await connections.unregister(first)
    assert await tracker.set_offline(first) is False
    assert tracker.is_online(alice_id)
    assert len(observer.websocket.events(USER_STATUS_EVENT)) == 1

    await connections.unregister(second)
    assert await tracker.set_offline(second) is True
    assert not tracker.is_online(alice_id)
    assert observer.websocket.events(USER_STATUS_EVENT)[-1] == {"userId": alice_id, "online": False}
    assert store.require_user(alice_id).online is False


@pytest.mark.anyio("asyncio")
async def test_unannounced_connection_never_changes_presence(
    tracker, connections, make_user, make_connection
):
    observer = make_connection(make_user("observer"))
    silent = make_connection(make_user("silent"))
    await connections.register(observer, [])
    await connections.register(silent, [])

    assert await tracker.set_offline(silent) is False
    assert observer.websocket.sent == []
    assert tracker.online_user_ids() == []


@pytest.mark.anyio("asyncio")
async def test_presence_reaches_users_sharing_no_channel(
    tracker, connections, make_user, make_connection
):
    stranger = make_connection(make_user("stranger"))
    alice = make_connection(make_user("alice"))
    await connections.register(stranger, [Channel.user(stranger.user_id)])
    await connections.register(alice, [Channel.user(alice.user_id)])

    await tracker.set_online(alice)

    assert stranger.websocket.events(USER_STATUS_EVENT) == [{"userId": alice.user_id, "online": True}]
    assert alice.websocket.events(USER_STATUS_EVENT) == [{"userId": alice.user_id, "online": True}]


@pytest.mark.anyio("asyncio")
async def test_failed_persist_keeps_user_offline(
    tracker, store, connections, make_user, make_connection, monkeypatch
):
    alice = make_connection(make_user("alice"))
    await connections.register(alice, [])

    def broken(user_id: str, online: bool):
        raise StorageError("Storage operation failed")

    monkeypatch.setattr(store, "set_presence", broken)
    with pytest.raises(StorageError):
        await tracker.set_online(alice)

    assert not tracker.is_online(alice.user_id)
    assert alice.announced_online is False
    assert alice.websocket.sent == []


@pytest.mark.anyio("asyncio")
async def test_failed_offline_persist_is_retried(
    tracker, store, connections, make_user, make_connection, monkeypatch, caplog
):
    observer = make_connection(make_user("observer"))
    alice = make_connection(make_user("alice"))
    bob = make_connection(make_user("bob"))
    for connection in (observer, alice, bob):
        await connections.register(connection, [])
    await tracker.set_online(alice)

    saving = store.set_presence
    failing = True

    def flaky(user_id: str, online: bool):
        if failing:
            raise StorageError("Storage operation failed")
        return saving(user_id, online)

    monkeypatch.setattr(store, "set_presence", flaky)
    with caplog.at_level(logging.ERROR):
        assert await tracker.set_offline(alice) is False

    assert not tracker.is_online(alice.user_id)
    assert tracker.unsaved_offline == {alice.user_id}
    assert any("offline state" in record.getMessage() for record in caplog.records)
    assert store.require_user(alice.user_id).online is True
    assert observer.websocket.events(USER_STATUS_EVENT) == [{"userId": alice.user_id, "online": True}]

    failing = False
    assert await tracker.set_online(bob) is True

    assert tracker.unsaved_offline == frozenset()
    assert store.require_user(alice.user_id).online is False
    assert observer.websocket.events(USER_STATUS_EVENT)[1:] == [
        {"userId": alice.user_id, "online": False},
        {"userId": bob.user_id, "online": True},
    ]


@pytest.mark.anyio("asyncio")
async def test_reconnect_clears_unsaved_offline(
    tracker, store, connections, make_user, make_connection, monkeypatch
):
    alice_id = make_user("alice")
    first, second = make_connection(alice_id), make_connection(alice_id)
    await connections.register(first, [])
    await connections.register(second, [])
    await tracker.set_online(first)

    saving = store.set_presence

    def offline_fails(user_id: str, online: bool):
        if not online:
            raise StorageError("Storage operation failed")
        return saving(user_id, online)

    monkeypatch.setattr(store, "set_presence", offline_fails)
    await tracker.set_offline(first)
    assert tracker.unsaved_offline == {alice_id}

    assert await tracker.set_online(second) is True
    assert tracker.unsaved_offline == frozenset()
    assert store.require_user(alice_id).online is True
    assert await tracker.flush_unsaved() == []


class StalledWebSocket:
    """Accepts frames only after ``release`` is set."""

    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict] = []
        self.release = asyncio.Event()

    async def send_json(self, payload: dict) -> None:
        await self.release.wait()
        self.sent.append(payload)


async def _wait_until(condition) -> None:
    while not condition():
        await asyncio.sleep(0.01)


@pytest.mark.anyio("asyncio")
async def test_slow_socket_does_not_hold_other_presence_changes(
    tracker, store, connections, make_user, make_connection
):
    slow = ClientConnection(user_id=make_user("slow"), username="slow", websocket=StalledWebSocket())
    alice = make_connection(make_user("alice"))
    bob = make_connection(make_user("bob"))
    for connection in (slow, alice, bob):
        await connections.register(connection, [])

    alice_online = asyncio.create_task(tracker.set_online(alice))
    bob_online = asyncio.create_task(tracker.set_online(bob))
    await asyncio.wait_for(_wait_until(lambda: tracker.is_online(bob.user_id)), timeout=5)

    assert store.require_user(bob.user_id).online is True
    assert not alice_online.done()

    slow.websocket.release.set()
    assert await alice_online is True
    assert await bob_online is True
    assert sorted(frame["data"]["userId"] for frame in slow.websocket.sent) == sorted(
        [alice.user_id, bob.user_id]
    )


@pytest.mark.anyio("asyncio")
async def test_announcements_keep_online_offline_order(
    tracker, connections, make_user, make_connection
):
    slow = ClientConnection(user_id=make_user("slow"), username="slow", websocket=StalledWebSocket())
    observer = make_connection(make_user("observer"))
    alice = make_connection(make_user("alice"))
    for connection in (slow, observer, alice):
        await connections.register(connection, [])

    going_online = asyncio.create_task(tracker.set_online(alice))
    await asyncio.wait_for(_wait_until(lambda: tracker.is_online(alice.user_id)), timeout=5)
    going_offline = asyncio.create_task(tracker.set_offline(alice))
    await asyncio.wait_for(_wait_until(lambda: not tracker.is_online(alice.user_id)), timeout=5)

    slow.websocket.release.set()
    await going_online
    assert await going_offline is True

    for websocket in (slow.websocket, observer.websocket):
        statuses = [
            frame["data"]["online"] for frame in websocket.sent if frame["type"] == USER_STATUS_EVENT
        ]
        assert statuses in ([True, False], [False])
