"""Process-wide websocket registry with channel-based fan-out."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.config import get_settings
from app.monitoring.metrics import (
    realtime_connections,
    realtime_deliveries_total,
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
)

from .channels import Channel
from .transport import (
    EVENTS_TOPIC,
    BrokerConfig,
    RedisTransport,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)

# Scopes of a cross-node delivery envelope.
SCOPE_CHANNEL = "channel"
SCOPE_CONNECTION = "connection"
SCOPE_ALL = "all"


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through *websocket*, returning ``False`` instead of raising on a closed socket."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


@dataclass(eq=False)
class ClientConnection:
    """One live websocket bound to an authenticated user."""

    user_id: str
    username: str
    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    announced_online: bool = False
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def send(self, event: str, data: Any = None) -> bool:
        frame: dict[str, Any] = {"type": event}
        if data is not None:
            frame["data"] = data
        async with self._send_lock:
            delivered = await safe_send_json(self.websocket, frame)
        realtime_deliveries_total.labels("delivered" if delivered else "failed").inc()
        return delivered


class ChannelConnectionManager:
    """Track live connections per user and per channel.

    All index mutations happen under one lock; deliveries run outside it on a
    snapshot, so a slow socket never blocks connect or disconnect. When a
    transport is attached every delivery is also published for other nodes,
    tagged with this node's id so the echo is ignored.
    """

    def __init__(self, transport: RedisTransport | None = None, *, node_id: str) -> None:
        self._transport = transport
        self._node_id = node_id
        self._connections: Dict[str, ClientConnection] = {}
        self._by_user: Dict[str, Set[str]] = defaultdict(set)
        self._by_channel: Dict[str, Set[str]] = defaultdict(set)
        self._channels_of: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._remote_enabled = False
        self._publish_warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    async def register(self, connection: ClientConnection, channels: Iterable[Channel]) -> None:
        async with self._lock:
            self._connections[connection.id] = connection
            self._by_user[connection.user_id].add(connection.id)
            for channel in channels:
                self._subscribe_locked(connection.id, channel)
        realtime_connections.labels().inc()
        logger.debug(
            "Registered connection %s for user %s", connection.id, connection.user_id
        )

    async def unregister(self, connection: ClientConnection) -> None:
        async with self._lock:
            if self._connections.pop(connection.id, None) is None:
                return
            for key in self._channels_of.pop(connection.id, set()):
                self._discard_locked(connection.id, key)
            sockets = self._by_user.get(connection.user_id)
            if sockets is not None:
                sockets.discard(connection.id)
                if not sockets:
                    self._by_user.pop(connection.user_id, None)
        realtime_connections.labels().dec()
        logger.debug(
            "Unregistered connection %s for user %s", connection.id, connection.user_id
        )

    def _subscribe_locked(self, connection_id: str, channel: Channel) -> bool:
        if channel.key in self._channels_of[connection_id]:
            return False
        self._channels_of[connection_id].add(channel.key)
        self._by_channel[channel.key].add(connection_id)
        realtime_subscriptions.labels(channel.kind.value).inc()
        return True

    def _discard_locked(self, connection_id: str, key: str) -> None:
        members = self._by_channel.get(key)
        if members is None or connection_id not in members:
            return
        members.discard(connection_id)
        if not members:
            self._by_channel.pop(key, None)
        realtime_subscriptions.labels(Channel.from_key(key).kind.value).dec()

    async def subscribe(self, connection_id: str, channel: Channel) -> bool:
        async with self._lock:
            if connection_id not in self._connections:
                return False
            return self._subscribe_locked(connection_id, channel)

    async def unsubscribe(self, connection_id: str, channel: Channel) -> None:
        async with self._lock:
            keys = self._channels_of.get(connection_id)
            if keys is None or channel.key not in keys:
                return
            keys.discard(channel.key)
            self._discard_locked(connection_id, channel.key)

    async def subscribe_user(self, user_id: str, channel: Channel) -> int:
        """Subscribe every live connection of *user_id*; returns how many were added."""

        async with self._lock:
            return sum(
                self._subscribe_locked(connection_id, channel)
                for connection_id in list(self._by_user.get(user_id, ()))
            )

    async def unsubscribe_user(self, user_id: str, channel: Channel) -> None:
        async with self._lock:
            for connection_id in list(self._by_user.get(user_id, ())):
                keys = self._channels_of.get(connection_id)
                if keys is not None and channel.key in keys:
                    keys.discard(channel.key)
                    self._discard_locked(connection_id, channel.key)

    def get(self, connection_id: str) -> ClientConnection | None:
        return self._connections.get(connection_id)

    def connections_for_user(self, user_id: str) -> list[ClientConnection]:
        return [
            self._connections[connection_id]
            for connection_id in list(self._by_user.get(user_id, ()))
            if connection_id in self._connections
        ]

    def is_subscribed(self, connection_id: str, channel: Channel) -> bool:
        return channel.key in self._channels_of.get(connection_id, ())

    def channels_for(self, connection_id: str) -> list[Channel]:
        return [Channel.from_key(key) for key in sorted(self._channels_of.get(connection_id, ()))]

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def broadcast(
        self,
        channel: Channel,
        event: str,
        data: Any,
        *,
        exclude: Iterable[str] = (),
    ) -> int:
        """Deliver *event* to every connection subscribed to *channel*."""

        excluded = list(exclude)
        delivered = await self._deliver_channel(channel.key, event, data, set(excluded))
        await self._publish(
            event,
            {"scope": SCOPE_CHANNEL, "target": channel.key, "exclude": excluded},
            data,
        )
        return delivered

    async def emit_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        connection = self._connections.get(connection_id)
        if connection is not None:
            delivered = await connection.send(event, data)
            realtime_events_total.labels(event, "out", "local").inc()
            return delivered
        await self._publish(event, {"scope": SCOPE_CONNECTION, "target": connection_id}, data)
        return False

    async def broadcast_all(self, event: str, data: Any, *, exclude: Iterable[str] = ()) -> int:
        excluded = list(exclude)
        delivered = await self._deliver_all(event, data, set(excluded))
        await self._publish(event, {"scope": SCOPE_ALL, "exclude": excluded}, data)
        return delivered

    async def _deliver_channel(self, key: str, event: str, data: Any, excluded: Set[str]) -> int:
        async with self._lock:
            targets = [
                self._connections[connection_id]
                for connection_id in self._by_channel.get(key, ())
                if connection_id not in excluded and connection_id in self._connections
            ]
        return await self._send_many(targets, event, data)

    async def _deliver_all(self, event: str, data: Any, excluded: Set[str]) -> int:
        async with self._lock:
            targets = [
                connection
                for connection_id, connection in self._connections.items()
                if connection_id not in excluded
            ]
        return await self._send_many(targets, event, data)

    async def _send_many(self, targets: list[ClientConnection], event: str, data: Any) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(*(target.send(event, data) for target in targets))
        realtime_events_total.labels(event, "out", "local").inc()
        return sum(1 for ok in results if ok)

    # ------------------------------------------------------------------
    # Cross-node fan-out
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._transport is None:
            logger.info("Realtime broker not configured; running in local-only mode")
            return
        try:
            await self._transport.start()
            await self._transport.subscribe(EVENTS_TOPIC, self.handle_remote)
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable during startup; continuing without cross-node sync",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return
        self._remote_enabled = True

    async def stop(self) -> None:
        if self._transport is not None:
            await self._transport.stop()
        self._remote_enabled = False

    async def handle_remote(self, message: dict[str, Any]) -> None:
        """Deliver an envelope published by another node to local subscribers."""

        if message.get("origin") == self._node_id:
            return
        event = message.get("event")
        if not isinstance(event, str):
            return
        scope = message.get("scope")
        data = message.get("data")
        excluded = set(message.get("exclude") or ())
        if scope == SCOPE_CHANNEL and isinstance(message.get("target"), str):
            await self._deliver_channel(message["target"], event, data, excluded)
        elif scope == SCOPE_CONNECTION:
            connection = self._connections.get(message.get("target"))
            if connection is not None:
                await connection.send(event, data)
        elif scope == SCOPE_ALL:
            await self._deliver_all(event, data, excluded)
        else:
            return
        realtime_events_total.labels(event, "in", scope).inc()

    async def _publish(self, event: str, envelope: dict[str, Any], data: Any) -> None:
        if self._transport is None or not self._remote_enabled:
            return
        payload = {**envelope, "event": event, "data": data, "origin": self._node_id}
        try:
            await self._transport.publish(EVENTS_TOPIC, payload)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while broadcasting %s; operating in local-only mode",
                    event,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels("unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels("error").inc()
            logger.exception("Unexpected error while broadcasting %s", event)
        else:
            self._publish_warning_logged = False
            realtime_events_total.labels(event, "out", "broker").inc()


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

transport: RedisTransport | None = (
    RedisTransport(
        BrokerConfig(
            redis_url=settings.realtime_redis_url,
            prefix=settings.realtime_namespace,
            node_id=_node_id,
        )
    )
    if settings.realtime_redis_url
    else None
)

channel_manager = ChannelConnectionManager(transport, node_id=_node_id)


async def startup_realtime() -> None:
    await channel_manager.start()


async def shutdown_realtime() -> None:
    await channel_manager.stop()


def get_channel_manager() -> ChannelConnectionManager:
    return channel_manager


__all__ = [
    "ClientConnection",
    "ChannelConnectionManager",
    "safe_send_json",
    "startup_realtime",
    "shutdown_realtime",
    "get_channel_manager",
]
