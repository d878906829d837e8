from __future__ import annotations

import time

import pytest
from fastapi.websockets import WebSocketDisconnect
from starlette.testclient import WebSocketTestSession

from app.api import ws as ws_module
from app.core.security import create_access_token


def _connect(client, user_id: str):
    token = create_access_token({"sub": user_id})
    return client.websocket_connect(f"/ws?token={token}")


def _expect(connection: WebSocketTestSession, event: str):
    frame = connection.receive_json()
    assert frame["type"] == event, frame
    return frame.get("data")


def test_connection_without_token_is_refused(client) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws"):
            pass
    assert excinfo.value.code == 1008


def test_connection_with_unknown_user_is_refused(client) -> None:
    with pytest.raises(WebSocketDisconnect):
        with _connect(client, "ghost"):
            pass


def test_connected_event_lists_channels(client, make_user, store) -> None:
    alice_id = make_user("alice")
    community = store.create_community(alice_id, name="Ops")

    with _connect(client, alice_id) as socket:
        connected = _expect(socket, "connected")
        assert connected["userId"] == alice_id
        assert connected["connectionId"]
        assert set(connected["channels"]) == {f"user:{alice_id}", f"community:{community.id}"}

        socket.send_json({"type": "ping"})
        _expect(socket, "pong")

        socket.send_text("not json")
        assert _expect(socket, "error") == {"detail": "Invalid JSON payload"}

        socket.send_json(["type", "ping"])
        assert "detail" in _expect(socket, "error")

        # Unknown and invalid events are dropped without a reply.
        socket.send_json({"type": "self-destruct", "data": {}})
        socket.send_json({"type": "private-message", "data": {"content": "no receiver"}})
        socket.send_json({"type": "ping"})
        _expect(socket, "pong")


def test_private_message_round_trip(client, make_user) -> None:
    alice_id, bob_id = make_user("alice"), make_user("bob")

    with _connect(client, alice_id) as alice, _connect(client, bob_id) as bob:
        _expect(alice, "connected")
        _expect(bob, "connected")

        alice.send_json(
            {"type": "private-message", "data": {"receiverId": bob_id, "content": "hi", "type": "text"}}
        )
        received = _expect(bob, "private-message")
        sent = _expect(alice, "message-sent")
        assert received["content"] == "hi"
        assert received["sender_id"] == alice_id
        assert received["id"] == sent["id"]

        alice.send_json({"type": "delete-message", "data": {"messageId": sent["id"]}})
        assert _expect(bob, "message-deleted") == {"messageId": sent["id"]}
        alice.send_json({"type": "ping"})
        _expect(alice, "pong")

    history = client.get(
        f"/api/messages/{alice_id}",
        headers={"Authorization": f"Bearer {create_access_token({'sub': bob_id})}"},
    )
    assert history.status_code == 200
    assert history.json() == []


def test_presence_announced_to_everyone(client, make_user) -> None:
    alice_id, bob_id = make_user("alice"), make_user("bob")

    with _connect(client, bob_id) as bob:
        _expect(bob, "connected")
        with _connect(client, alice_id) as alice:
            _expect(alice, "connected")
            alice.send_json({"type": "user-online", "data": alice_id})
            assert _expect(bob, "user-status") == {"userId": alice_id, "online": True}
            assert _expect(alice, "user-status") == {"userId": alice_id, "online": True}

        assert _expect(bob, "user-status") == {"userId": alice_id, "online": False}


def test_call_signaling_over_socket(client, make_user) -> None:
    alice_id, bob_id = make_user("alice"), make_user("bob")

    with _connect(client, alice_id) as alice, _connect(client, bob_id) as bob:
        alice_conn = _expect(alice, "connected")["connectionId"]
        _expect(bob, "connected")

        alice.send_json(
            {
                "type": "call-user",
                "data": {"targetUserId": bob_id, "offer": {"sdp": "o"}, "callType": "video"},
            }
        )
        incoming = _expect(bob, "incoming-call")
        assert incoming == {
            "offer": {"sdp": "o"},
            "callType": "video",
            "from": alice_conn,
            "fromUserId": alice_id,
        }

        bob.send_json(
            {"type": "call-answer", "data": {"targetSocketId": incoming["from"], "answer": {"sdp": "a"}}}
        )
        answered = _expect(alice, "call-answered")
        assert answered["answer"] == {"sdp": "a"}
        assert answered["fromUserId"] == bob_id


def test_connection_survives_keepalive_timeout(client, make_user) -> None:
    """Ensure that the server side keepalive pings keep the socket open."""

    user_id = make_user("keepalive-user")

    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds

    settings.websocket_keepalive_timeout_seconds = 0.1
    settings.websocket_keepalive_ping_interval_seconds = 0.05

    try:
        with _connect(client, user_id) as connection:
            _assert_keepalive_sequence(connection)
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval


def _assert_keepalive_sequence(connection: WebSocketTestSession) -> None:
    """Observe two keepalive pings with client responses to keep the connection active."""

    _expect(connection, "connected")

    time.sleep(0.15)
    _expect(connection, "ping")
    connection.send_json({"type": "pong"})

    time.sleep(0.12)
    _expect(connection, "ping")
    connection.send_json({"type": "pong"})

    connection.send_json({"type": "ping"})
    _expect(connection, "pong")
