"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.enums import MessageKind


def _ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserPublic(BaseModel):
    """Contact card shared with other users."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    avatar: str = "default"
    avatar_color: str = "#CC0000"
    status: str = "Available"
    online: bool = False
    last_seen: datetime | None = None

    @field_validator("last_seen")
    @classmethod
    def normalise_last_seen(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)


class MessageReactionSummary(BaseModel):
    """Aggregated reaction information for a message."""

    emoji: str
    count: int = Field(..., ge=0)
    me: bool = Field(default=False, description="Whether the viewer added this reaction")


class MessageRead(BaseModel):
    """Persisted message joined with sender metadata and the quoted reply."""

    id: str
    sender_id: str
    receiver_id: str | None = None
    room_id: str | None = None
    community_id: str | None = None
    content: str
    type: MessageKind = MessageKind.TEXT
    timestamp: datetime
    read: bool | None = None
    sender_name: str
    sender_color: str | None = None
    sender_avatar: str | None = None
    reply_to_id: str | None = None
    reply_to_content: str | None = None
    reply_to_name: str | None = None
    reactions: list[MessageReactionSummary] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def normalise_timestamp(cls, value: datetime) -> datetime:
        return _ensure_utc(value)


class ReactionUpdate(BaseModel):
    """Outcome of a reaction toggle as broadcast to the message's channel."""

    messageId: str
    emoji: str
    userId: str
    count: int = Field(..., ge=0)
    reacted: bool


class MessageRoute(BaseModel):
    """Where a stored message lives; used to address reaction and deletion events."""

    message_id: str
    sender_id: str
    receiver_id: str | None = None
    room_id: str | None = None
    community_id: str | None = None
