from __future__ import annotations

from enum import Enum


class MessageKind(str, Enum):
    """Payload kinds a chat message can carry."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


class MembershipRole(str, Enum):
    """Roles that a user can have inside a community or room."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class MembershipStatus(str, Enum):
    """Only active memberships take part in routing and visibility."""

    PENDING = "pending"
    ACTIVE = "active"


class FriendshipStatus(str, Enum):
    """Lifecycle states for friend relationships."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RoomType(str, Enum):
    GROUP = "group"
