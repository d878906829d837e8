from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.models.enums import (
    FriendshipStatus,
    MembershipRole,
    MembershipStatus,
    MessageKind,
    RoomType,
)


def generate_id() -> str:
    """Return a fresh opaque identifier."""

    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        validate_strings=True,
    )


def friendship_pair_key(first_user_id: str, second_user_id: str) -> str:
    """Key shared by both orderings of a user pair."""

    low, high = sorted((first_user_id, second_user_id))
    return f"{low}:{high}"


class User(Base):
    """Chat user; created by the identity collaborator, never hard-deleted here."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    avatar: Mapped[str] = mapped_column(String(64), default="default", nullable=False)
    avatar_color: Mapped[str] = mapped_column(String(16), default="#CC0000", nullable=False)
    status: Mapped[str] = mapped_column(String(128), default="Available", nullable=False)
    online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    community_memberships: Mapped[list["CommunityMember"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    room_memberships: Mapped[list["RoomMember"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class Friendship(Base):
    """Friend relationship; at most one row per unordered user pair."""

    __tablename__ = "friendships"
    __table_args__ = (UniqueConstraint("pair_key", name="uq_friendship_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    receiver_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pair_key: Mapped[str] = mapped_column(String(80), nullable=False)
    status: Mapped[FriendshipStatus] = mapped_column(
        _enum_column(FriendshipStatus, "friendship_status"),
        default=FriendshipStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    receiver: Mapped[User] = relationship(foreign_keys=[receiver_id])


class Room(Base):
    """Ad-hoc group room."""

    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[RoomType] = mapped_column(
        _enum_column(RoomType, "room_type"), default=RoomType.GROUP, nullable=False
    )
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    members: Mapped[list["RoomMember"]] = relationship(
        back_populates="room", cascade="all, delete-orphan"
    )


class RoomMember(Base):
    __tablename__ = "room_members"

    room_id: Mapped[str] = mapped_column(
        ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    role: Mapped[MembershipRole] = mapped_column(
        _enum_column(MembershipRole, "room_member_role"),
        default=MembershipRole.MEMBER,
        nullable=False,
    )
    status: Mapped[MembershipStatus] = mapped_column(
        _enum_column(MembershipStatus, "room_member_status"),
        default=MembershipStatus.ACTIVE,
        nullable=False,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    room: Mapped[Room] = relationship(back_populates="members")
    user: Mapped[User] = relationship(back_populates="room_memberships")


class Community(Base):
    """Access-code gated group with owner/admin/member roles."""

    __tablename__ = "communities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    access_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    avatar: Mapped[str] = mapped_column(String(64), default="default", nullable=False)
    avatar_color: Mapped[str] = mapped_column(String(16), default="#CC0000", nullable=False)
    created_by: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    max_members: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    members: Mapped[list["CommunityMember"]] = relationship(
        back_populates="community", cascade="all, delete-orphan"
    )


class CommunityMember(Base):
    __tablename__ = "community_members"

    community_id: Mapped[str] = mapped_column(
        ForeignKey("communities.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    role: Mapped[MembershipRole] = mapped_column(
        _enum_column(MembershipRole, "community_member_role"),
        default=MembershipRole.MEMBER,
        nullable=False,
    )
    status: Mapped[MembershipStatus] = mapped_column(
        _enum_column(MembershipStatus, "community_member_status"),
        default=MembershipStatus.ACTIVE,
        nullable=False,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    community: Mapped[Community] = relationship(back_populates="members")
    user: Mapped[User] = relationship(back_populates="community_memberships")


class Message(Base):
    """Chat message addressed to exactly one destination."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN receiver_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN room_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN community_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_message_single_destination",
        ),
        Index("ix_messages_direct_pair", "sender_id", "receiver_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    sender_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    receiver_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), index=True)
    room_id: Mapped[str | None] = mapped_column(
        ForeignKey("rooms.id", ondelete="CASCADE"), index=True
    )
    community_id: Mapped[str | None] = mapped_column(
        ForeignKey("communities.id", ondelete="CASCADE"), index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[MessageKind] = mapped_column(
        "type", _enum_column(MessageKind, "message_kind"), default=MessageKind.TEXT, nullable=False
    )
    # Reply targets may be hard-deleted later, so this is a soft reference.
    reply_to_id: Mapped[str | None] = mapped_column(String(36))
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        "timestamp", DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    reactions: Mapped[list["MessageReaction"]] = relationship(
        back_populates="message", cascade="all, delete-orphan", passive_deletes=True
    )


class MessageReaction(Base):
    """One emoji reaction by one user; counts are derived by grouping."""

    __tablename__ = "message_reactions"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_message_reaction"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    message: Mapped[Message] = relationship(back_populates="reactions")


class DeletedMessage(Base):
    """Per-viewer suppression of a message that stays visible to everyone else."""

    __tablename__ = "deleted_messages"

    message_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    deleted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
