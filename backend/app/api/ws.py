"""The single websocket endpoint carrying every realtime chat event."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from aether.realtime.channels import Channel
from aether.realtime.managers import ClientConnection, safe_send_json

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.monitoring.metrics import realtime_dropped_events_total, realtime_events_total
from app.schemas import events
from app.schemas.messages import UserPublic
from app.services import (
    call_relay,
    membership_router,
    message_pipeline,
    presence_tracker,
)
from app.services.chat_store import ChatStoreError, StorageError

router = APIRouter(tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            now = time.monotonic()
            idle_long_enough = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if idle_long_enough:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> UserPublic | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        return await run_in_threadpool(get_user_from_token, token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


async def _on_user_online(connection: ClientConnection, event: events.UserOnline) -> None:
    if event.user_id and event.user_id != connection.user_id:
        _drop(event.event_name, "identity_mismatch")
        return
    await presence_tracker.set_online(connection)


async def _on_private_message(connection: ClientConnection, event: events.PrivateMessage) -> None:
    await message_pipeline.send_direct(
        connection, event.receiver_id, event.content, event.kind, event.reply_to_id
    )


async def _on_community_message(connection: ClientConnection, event: events.CommunityMessage) -> None:
    await message_pipeline.send_to_channel(
        connection, Channel.community(event.community_id), event.content, event.kind, event.reply_to_id
    )


async def _on_group_message(connection: ClientConnection, event: events.GroupMessage) -> None:
    await message_pipeline.send_to_channel(
        connection, Channel.room(event.room_id), event.content, event.kind, event.reply_to_id
    )


async def _on_typing(connection: ClientConnection, event: events.Typing | events.StopTyping) -> None:
    await message_pipeline.relay_typing(
        connection,
        event.event_name,
        receiver_id=event.receiver_id,
        community_id=event.community_id,
    )


async def _on_messages_read(connection: ClientConnection, event: events.MessagesRead) -> None:
    await message_pipeline.mark_read(connection.user_id, event.sender_id)


async def _on_reaction(connection: ClientConnection, event: events.MessageReaction) -> None:
    await message_pipeline.react(connection, event.message_id, event.emoji)


async def _on_delete(connection: ClientConnection, event: events.DeleteMessage) -> None:
    await message_pipeline.delete_for_all(
        event.message_id, connection.user_id, source_connection=connection.id
    )


async def _on_join_community(connection: ClientConnection, event: events.JoinCommunity) -> None:
    await membership_router.join_community(connection, event.community_id)


async def _on_friend_request(connection: ClientConnection, event: events.FriendRequest) -> None:
    await message_pipeline.relay_friend_event(connection, event.event_name, event.receiver_id)


async def _on_friend_decision(
    connection: ClientConnection, event: events.FriendAccepted | events.FriendRejected
) -> None:
    await message_pipeline.relay_friend_event(connection, event.event_name, event.friend_id)


async def _on_call_signal(connection: ClientConnection, event: events.CallSignal) -> None:
    await call_relay.relay(
        connection,
        event.event_name,
        event.payload,
        target_user_id=event.target_user_id,
        target_socket_id=event.target_socket_id if isinstance(event, events.CallAnswer) else None,
    )


_HANDLERS: Dict[type[events.ClientEvent], Callable[[ClientConnection, Any], Awaitable[None]]] = {
    events.UserOnline: _on_user_online,
    events.PrivateMessage: _on_private_message,
    events.CommunityMessage: _on_community_message,
    events.GroupMessage: _on_group_message,
    events.Typing: _on_typing,
    events.StopTyping: _on_typing,
    events.MessagesRead: _on_messages_read,
    events.MessageReaction: _on_reaction,
    events.DeleteMessage: _on_delete,
    events.JoinCommunity: _on_join_community,
    events.FriendRequest: _on_friend_request,
    events.FriendAccepted: _on_friend_decision,
    events.FriendRejected: _on_friend_decision,
    events.CallUser: _on_call_signal,
    events.CallAnswer: _on_call_signal,
    events.IceCandidate: _on_call_signal,
    events.CallReject: _on_call_signal,
    events.CallEnd: _on_call_signal,
}


def _drop(event_name: str, reason: str) -> None:
    realtime_dropped_events_total.labels(event_name, reason).inc()


async def dispatch_frame(connection: ClientConnection, raw: str) -> None:
    """Decode one inbound frame and run its handler to completion."""

    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        await connection.send("error", {"detail": "Invalid JSON payload"})
        return
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        await connection.send("error", {"detail": "Frames must be objects with a string type"})
        return

    name = frame["type"]
    if name == "ping":
        await connection.send("pong")
        return
    if name == "pong":
        return

    try:
        event = events.parse_client_event(name, frame.get("data"))
    except events.UnknownEventError:
        logger.debug("Dropping unknown event %r from %s", name, connection.id)
        _drop("unknown", "unknown_event")
        return
    except ValidationError as exc:
        logger.debug("Dropping invalid %s from %s: %s", name, connection.id, exc.errors())
        _drop(name, "invalid")
        return

    realtime_events_total.labels(name, "in", "client").inc()
    try:
        await _HANDLERS[type(event)](connection, event)
    except StorageError:
        # Already logged with a traceback by the store.
        _drop(name, "storage")
    except ChatStoreError as exc:
        logger.debug("Dropping %s from %s: %s", name, connection.id, exc.detail)
        _drop(name, type(exc).__name__)


@router.websocket("/ws")
async def websocket_chat(websocket: WebSocket) -> None:
    """One persistent connection per client; frames are ``{"type", "data"}`` objects."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    connection = ClientConnection(user_id=user.id, username=user.username, websocket=websocket)
    await websocket.accept()
    try:
        channels = await membership_router.attach(connection)
    except ChatStoreError:
        await membership_router.detach(connection)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        await connection.send(
            "connected",
            {
                "connectionId": connection.id,
                "userId": user.id,
                "channels": [channel.key for channel in channels],
            },
        )
        async for raw in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            await dispatch_frame(connection, raw)
    finally:
        await membership_router.detach(connection)
        await presence_tracker.set_offline(connection)
        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            await websocket.close()
