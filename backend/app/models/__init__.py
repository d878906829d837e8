"""Database models package."""

from .base import Base
from .chat import (
    Community,
    CommunityMember,
    DeletedMessage,
    Friendship,
    Message,
    MessageReaction,
    Room,
    RoomMember,
    User,
    friendship_pair_key,
    generate_id,
)
from .enums import FriendshipStatus, MembershipRole, MembershipStatus, MessageKind, RoomType

__all__ = [
    "Base",
    "User",
    "Friendship",
    "Room",
    "RoomMember",
    "Community",
    "CommunityMember",
    "Message",
    "MessageReaction",
    "DeletedMessage",
    "FriendshipStatus",
    "MembershipRole",
    "MembershipStatus",
    "MessageKind",
    "RoomType",
    "friendship_pair_key",
    "generate_id",
]
