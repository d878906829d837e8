"""Reference-counted online/offline tracking with global broadcast."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Set

from starlette.concurrency import run_in_threadpool

from aether.realtime.managers import ChannelConnectionManager, ClientConnection

from app.monitoring.metrics import presence_online_users
from app.services.chat_store import ChatStore, ChatStoreError

logger = logging.getLogger(__name__)

USER_STATUS_EVENT = "user-status"


class PresenceTracker:
    """Collapse a user's announced connections into a single presence state.

    A connection counts once it has sent ``user-online``. The user flips
    online when the first such connection appears and offline when the last
    one closes; each flip is persisted first and then broadcast to every
    connected client.

    Counting and persisting happen under one lock. Broadcasts happen after
    it is released, ordered per user: every flip takes the next sequence
    number and only the newest flip of a user is announced, so a quick
    reconnect can never deliver offline after online.
    """

    def __init__(self, store: ChatStore, connections: ChannelConnectionManager) -> None:
        self._store = store
        self._connections = connections
        self._counts: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self._sequence: Dict[str, int] = defaultdict(int)
        self._announce_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._unsaved_offline: Set[str] = set()

    def is_online(self, user_id: str) -> bool:
        return self._counts.get(user_id, 0) > 0

    def online_user_ids(self) -> list[str]:
        return [user_id for user_id, count in self._counts.items() if count > 0]

    @property
    def unsaved_offline(self) -> frozenset[str]:
        """Users whose offline flag could not be written yet."""

        return frozenset(self._unsaved_offline)

    async def set_online(self, connection: ClientConnection) -> bool:
        """Count *connection* toward its user's presence; returns True on a 0->1 flip."""

        user_id = connection.user_id
        async with self._lock:
            if connection.announced_online:
                return False
            first = self._counts[user_id] == 0
            if first:
                await run_in_threadpool(self._store.set_presence, user_id, True)
                self._unsaved_offline.discard(user_id)
            self._counts[user_id] += 1
            connection.announced_online = True
            presence_online_users.set(len(self.online_user_ids()))
            sequence = self._next_sequence(user_id) if first else 0
            recovered = await self._retry_unsaved_offline()

        await self._announce_recovered(recovered)
        if first:
            await self._announce(user_id, True, sequence)
            logger.info("User %s is online", user_id)
        return first

    async def set_offline(self, connection: ClientConnection) -> bool:
        """Release *connection*; returns True when its user went offline."""

        user_id = connection.user_id
        async with self._lock:
            if not connection.announced_online:
                return False
            connection.announced_online = False
            self._counts[user_id] -= 1
            if self._counts[user_id] > 0:
                return False
            self._counts.pop(user_id, None)
            presence_online_users.set(len(self.online_user_ids()))
            sequence = self._next_sequence(user_id)
            recovered = await self._retry_unsaved_offline()
            try:
                await run_in_threadpool(self._store.set_presence, user_id, False)
            except ChatStoreError:
                logger.exception("Failed to persist offline state for user %s", user_id)
                self._unsaved_offline.add(user_id)
                saved = False
            else:
                saved = True

        await self._announce_recovered(recovered)
        if not saved:
            return False
        await self._announce(user_id, False, sequence)
        logger.info("User %s is offline", user_id)
        return True

    async def flush_unsaved(self) -> list[str]:
        """Retry pending offline writes now; returns the users that were saved."""

        async with self._lock:
            recovered = await self._retry_unsaved_offline()
        await self._announce_recovered(recovered)
        return [user_id for user_id, _ in recovered]

    def _next_sequence(self, user_id: str) -> int:
        self._sequence[user_id] += 1
        return self._sequence[user_id]

    async def _retry_unsaved_offline(self) -> list[tuple[str, int]]:
        # Caller holds self._lock.
        recovered: list[tuple[str, int]] = []
        for user_id in sorted(self._unsaved_offline):
            if self._counts.get(user_id, 0) > 0:
                self._unsaved_offline.discard(user_id)
                continue
            try:
                await run_in_threadpool(self._store.set_presence, user_id, False)
            except ChatStoreError:
                logger.warning("Offline state for user %s is still unsaved", user_id)
                continue
            self._unsaved_offline.discard(user_id)
            recovered.append((user_id, self._sequence[user_id]))
        return recovered

    async def _announce_recovered(self, recovered: list[tuple[str, int]]) -> None:
        for user_id, sequence in recovered:
            await self._announce(user_id, False, sequence)
            logger.info("User %s is offline", user_id)

    async def _announce(self, user_id: str, online: bool, sequence: int) -> None:
        async with self._announce_locks[user_id]:
            if self._sequence[user_id] != sequence:
                logger.debug("Skipping stale presence %s for user %s", online, user_id)
                return
            await self._connections.broadcast_all(
                USER_STATUS_EVENT, {"userId": user_id, "online": online}
            )
