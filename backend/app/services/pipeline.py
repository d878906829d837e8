"""Validate, persist and fan out chat events."""

from __future__ import annotations

import logging
from typing import Any

from starlette.concurrency import run_in_threadpool

from aether.realtime.channels import Channel, ChannelKind
from aether.realtime.managers import ChannelConnectionManager, ClientConnection

from app.models.enums import FriendshipStatus, MessageKind
from app.schemas.messages import MessageRead, MessageRoute, ReactionUpdate
from app.services.chat_store import ChatStore

logger = logging.getLogger(__name__)

_CHANNEL_MESSAGE_EVENTS = {
    ChannelKind.COMMUNITY: "community-message",
    ChannelKind.ROOM: "group-message",
}

# Friend relay event -> (required stored status, event delivered to the counterpart).
_FRIEND_EVENTS = {
    "friend-request": (FriendshipStatus.PENDING, "friend-request-received"),
    "friend-accepted": (FriendshipStatus.ACCEPTED, "friend-request-accepted"),
    "friend-rejected": (FriendshipStatus.REJECTED, "friend-request-rejected"),
}


def _route_channels(route: MessageRoute) -> list[Channel]:
    """Channels that saw a message: both participants of a DM, else its room or community."""

    if route.community_id is not None:
        return [Channel.community(route.community_id)]
    if route.room_id is not None:
        return [Channel.room(route.room_id)]
    channels = [Channel.user(route.sender_id)]
    if route.receiver_id is not None and route.receiver_id != route.sender_id:
        channels.append(Channel.user(route.receiver_id))
    return channels


class MessagePipeline:
    """Chat operations shared by the websocket dispatcher and the HTTP routes.

    Every method persists first and broadcasts only after the write
    succeeded. Store errors propagate untouched, so a failed write never
    produces an event.
    """

    def __init__(self, store: ChatStore, connections: ChannelConnectionManager) -> None:
        self._store = store
        self._connections = connections

    async def send_direct(
        self,
        connection: ClientConnection,
        receiver_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        reply_to_id: str | None = None,
    ) -> MessageRead:
        message = await run_in_threadpool(
            self._store.create_message,
            connection.user_id,
            content=content,
            kind=kind,
            receiver_id=receiver_id,
            reply_to_id=reply_to_id,
        )
        payload = message.model_dump(mode="json")
        await self._connections.broadcast(Channel.user(receiver_id), "private-message", payload)
        await self._connections.emit_to_connection(connection.id, "message-sent", payload)
        return message

    async def send_to_channel(
        self,
        connection: ClientConnection,
        channel: Channel,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        reply_to_id: str | None = None,
    ) -> MessageRead:
        """Persist and broadcast to every subscriber of *channel*, sender included."""

        event = _CHANNEL_MESSAGE_EVENTS.get(channel.kind)
        if event is None:
            raise ValueError(f"Cannot broadcast a message to {channel}")
        message = await run_in_threadpool(
            self._store.create_message,
            connection.user_id,
            content=content,
            kind=kind,
            channel=channel,
            reply_to_id=reply_to_id,
        )
        await self._connections.broadcast(channel, event, message.model_dump(mode="json"))
        return message

    async def react(self, connection: ClientConnection, message_id: str, emoji: str) -> ReactionUpdate:
        update, route = await run_in_threadpool(
            self._store.toggle_reaction, message_id, connection.user_id, emoji
        )
        payload = update.model_dump(mode="json")
        for channel in _route_channels(route):
            await self._connections.broadcast(channel, "message-reaction", payload)
        return update

    async def mark_read(self, reader_id: str, sender_id: str) -> int:
        """Flip sender->reader messages to read and tell the sender's devices."""

        updated = await run_in_threadpool(self._store.mark_read, reader_id, sender_id)
        await self._connections.broadcast(
            Channel.user(sender_id), "messages-read", {"readerId": reader_id}
        )
        return updated

    async def delete_for_self(self, message_id: str, requester_id: str) -> None:
        await run_in_threadpool(self._store.delete_for_self, message_id, requester_id)

    async def delete_for_all(
        self, message_id: str, requester_id: str, *, source_connection: str | None = None
    ) -> MessageRoute:
        """Hard-delete and tell every recipient channel, except the requesting connection."""

        route = await run_in_threadpool(self._store.delete_for_all, message_id, requester_id)
        exclude = [source_connection] if source_connection else []
        for channel in _route_channels(route):
            await self._connections.broadcast(
                channel, "message-deleted", {"messageId": route.message_id}, exclude=exclude
            )
        logger.info("Message %s deleted for everyone by %s", message_id, requester_id)
        return route

    async def relay_typing(
        self,
        connection: ClientConnection,
        event: str,
        *,
        receiver_id: str | None = None,
        community_id: str | None = None,
    ) -> int:
        payload: dict[str, Any] = {"userId": connection.user_id, "username": connection.username}
        if community_id is not None:
            channel = Channel.community(community_id)
            if not self._connections.is_subscribed(connection.id, channel):
                logger.debug("Dropping %s to unsubscribed community %s", event, community_id)
                return 0
            payload["communityId"] = community_id
            return await self._connections.broadcast(channel, event, payload, exclude=[connection.id])
        if receiver_id is None:
            return 0
        return await self._connections.broadcast(Channel.user(receiver_id), event, payload)

    async def relay_friend_event(
        self, connection: ClientConnection, event: str, counterpart_id: str
    ) -> bool:
        """Forward a friendship notification once the stored state backs it up."""

        required, outbound = _FRIEND_EVENTS[event]
        friendship = await run_in_threadpool(
            self._store.friendship_between, connection.user_id, counterpart_id
        )
        if friendship is None or friendship.status is not required:
            logger.debug("Dropping %s: no %s friendship with %s", event, required.value, counterpart_id)
            return False
        if required is FriendshipStatus.PENDING and friendship.sender_id != connection.user_id:
            return False
        if required is FriendshipStatus.REJECTED:
            payload: dict[str, Any] = {"userId": connection.user_id}
        else:
            me = await run_in_threadpool(self._store.require_user, connection.user_id)
            key = "sender" if required is FriendshipStatus.PENDING else "friend"
            payload = {key: me.model_dump(mode="json")}
        await self._connections.broadcast(Channel.user(counterpart_id), outbound, payload)
        return True
