"""Pydantic schemas for API payloads and socket events."""

from .communities import (
    CommunityCreate,
    CommunityDetail,
    CommunityJoin,
    CommunityMemberRead,
    CommunityRead,
    JoinRequestRead,
    JoinRequestResult,
    MemberAction,
    RoleChange,
)
from .friends import FriendRequestCreate, FriendRequestDecision, FriendRequestRead, FriendshipRead
from .messages import MessageReactionSummary, MessageRead, MessageRoute, ReactionUpdate, UserPublic
from .rooms import RoomCreate, RoomRead

__all__ = [
    "CommunityCreate",
    "CommunityDetail",
    "CommunityJoin",
    "CommunityMemberRead",
    "CommunityRead",
    "JoinRequestRead",
    "JoinRequestResult",
    "MemberAction",
    "RoleChange",
    "FriendRequestCreate",
    "FriendRequestDecision",
    "FriendRequestRead",
    "FriendshipRead",
    "MessageReactionSummary",
    "MessageRead",
    "MessageRoute",
    "ReactionUpdate",
    "UserPublic",
    "RoomCreate",
    "RoomRead",
]
