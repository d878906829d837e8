"""Keep live connections subscribed to the channels their user belongs to."""

from __future__ import annotations

import logging
from typing import Iterable

from starlette.concurrency import run_in_threadpool

from aether.realtime.channels import Channel
from aether.realtime.managers import ChannelConnectionManager, ClientConnection

from app.services.chat_store import ChatStore

logger = logging.getLogger(__name__)

MEMBER_JOINED_EVENT = "community-member-joined"


class MembershipRouter:
    """Maps connections to ``{Self(U)} | active communities | active rooms``.

    The full set is computed on connect; afterwards membership mutations push
    their effect into the registry so no reconnect is needed.
    """

    def __init__(self, store: ChatStore, connections: ChannelConnectionManager) -> None:
        self._store = store
        self._connections = connections

    async def channels_for(self, user_id: str) -> list[Channel]:
        return await run_in_threadpool(self._store.active_channels, user_id)

    async def attach(self, connection: ClientConnection) -> list[Channel]:
        """Register *connection* and subscribe it to its user's memberships.

        The connection is registered with only its self channel before the
        store is read, so kicks and approvals that commit meanwhile already
        reach it through :meth:`member_removed` and :meth:`member_added`.
        Memberships are then read twice; channels that disappeared between
        the reads are dropped again.
        """

        own = Channel.user(connection.user_id)
        await self._connections.register(connection, [own])
        loaded = await self.channels_for(connection.user_id)
        for channel in loaded:
            await self._connections.subscribe(connection.id, channel)

        current = await self.channels_for(connection.user_id)
        for channel in set(loaded) - set(current):
            await self._connections.unsubscribe(connection.id, channel)
        for channel in current:
            await self._connections.subscribe(connection.id, channel)
        return current

    async def detach(self, connection: ClientConnection) -> None:
        await self._connections.unregister(connection)

    async def join_community(self, connection: ClientConnection, community_id: str) -> bool:
        """Subscribe a live connection after it became an active member.

        The join is announced only when the connection was not subscribed
        yet; an approval has usually announced it already.
        """

        channel = Channel.community(community_id)
        is_member = await run_in_threadpool(
            self._store.is_active_member, channel, connection.user_id
        )
        if not is_member:
            logger.debug(
                "Ignoring join of community %s by non-member %s", community_id, connection.user_id
            )
            return False
        if not await self._connections.subscribe(connection.id, channel):
            return True
        await self._connections.broadcast(
            channel,
            MEMBER_JOINED_EVENT,
            {
                "communityId": community_id,
                "user": {"id": connection.user_id, "username": connection.username},
            },
            exclude=[connection.id],
        )
        return True

    async def member_added(
        self, user_id: str, channel: Channel, *, username: str | None = None
    ) -> int:
        """Subscribe every live connection of *user_id*; announce community joins."""

        subscribed = await self._connections.subscribe_user(user_id, channel)
        if username is not None:
            await self._connections.broadcast(
                channel,
                MEMBER_JOINED_EVENT,
                {"communityId": channel.id, "user": {"id": user_id, "username": username}},
                exclude=[connection.id for connection in self._connections.connections_for_user(user_id)],
            )
        return subscribed

    async def members_added(self, user_ids: Iterable[str], channel: Channel) -> None:
        for user_id in user_ids:
            await self._connections.subscribe_user(user_id, channel)

    async def member_removed(self, user_id: str, channel: Channel) -> None:
        await self._connections.unsubscribe_user(user_id, channel)
