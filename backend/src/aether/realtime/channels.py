"""Logical broadcast scopes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChannelKind(str, Enum):
    USER = "user"
    ROOM = "room"
    COMMUNITY = "community"


@dataclass(frozen=True, slots=True)
class Channel:
    """A user's own inbox, a room or a community.

    Channels are derived from membership rows, never stored. ``key`` is the
    flat name used by the connection registry and the broker.
    """

    kind: ChannelKind
    id: str

    @classmethod
    def user(cls, user_id: str) -> "Channel":
        return cls(ChannelKind.USER, user_id)

    @classmethod
    def room(cls, room_id: str) -> "Channel":
        return cls(ChannelKind.ROOM, room_id)

    @classmethod
    def community(cls, community_id: str) -> "Channel":
        return cls(ChannelKind.COMMUNITY, community_id)

    @classmethod
    def from_key(cls, key: str) -> "Channel":
        kind, _, identifier = key.partition(":")
        if not identifier:
            raise ValueError(f"Malformed channel key '{key}'")
        return cls(ChannelKind(kind), identifier)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"

    def __str__(self) -> str:
        return self.key
