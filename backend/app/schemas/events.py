"""Closed registry of events a connected client may send."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models.enums import MessageKind


class UnknownEventError(ValueError):
    """Raised for event names outside the client event registry."""


class ClientEvent(BaseModel):
    """Base class for inbound socket events; wire fields are camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    event_name: ClassVar[str]


class UserOnline(ClientEvent):
    event_name = "user-online"

    user_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_bare_identifier(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"userId": value}
        if value is None:
            return {}
        return value


class _OutgoingMessage(ClientEvent):
    content: str
    kind: MessageKind = Field(default=MessageKind.TEXT, alias="type")
    reply_to_id: str | None = None

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value


class PrivateMessage(_OutgoingMessage):
    event_name = "private-message"

    receiver_id: str = Field(min_length=1)


class CommunityMessage(_OutgoingMessage):
    event_name = "community-message"

    community_id: str = Field(min_length=1)


class GroupMessage(_OutgoingMessage):
    event_name = "group-message"

    room_id: str = Field(min_length=1)


class _TypingTarget(ClientEvent):
    receiver_id: str | None = None
    community_id: str | None = None

    @model_validator(mode="after")
    def exactly_one_target(self) -> "_TypingTarget":
        if bool(self.receiver_id) == bool(self.community_id):
            raise ValueError("exactly one of receiverId or communityId is required")
        return self


class Typing(_TypingTarget):
    event_name = "typing"


class StopTyping(_TypingTarget):
    event_name = "stop-typing"


class MessagesRead(ClientEvent):
    event_name = "messages-read"

    sender_id: str = Field(min_length=1)


class MessageReaction(ClientEvent):
    event_name = "message-reaction"

    message_id: str = Field(min_length=1)
    emoji: str = Field(min_length=1, max_length=32)
    # Routing is derived from the stored message; these hints are ignored.
    receiver_id: str | None = None
    community_id: str | None = None


class DeleteMessage(ClientEvent):
    event_name = "delete-message"

    message_id: str = Field(min_length=1)
    receiver_id: str | None = None
    community_id: str | None = None


class JoinCommunity(ClientEvent):
    event_name = "join-community"

    community_id: str = Field(min_length=1)


class FriendRequest(ClientEvent):
    event_name = "friend-request"

    receiver_id: str = Field(min_length=1)


class FriendAccepted(ClientEvent):
    event_name = "friend-accepted"

    friend_id: str = Field(min_length=1)


class FriendRejected(ClientEvent):
    event_name = "friend-rejected"

    friend_id: str = Field(min_length=1)


class CallSignal(ClientEvent):
    """Opaque call-setup payload addressed to a user or one of its connections."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    target_user_id: str | None = None
    target_socket_id: str | None = None

    @model_validator(mode="after")
    def require_target(self) -> "CallSignal":
        if not self.target_user_id and not self.target_socket_id:
            raise ValueError("targetUserId is required")
        return self

    @property
    def payload(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class CallUser(CallSignal):
    event_name = "call-user"


class CallAnswer(CallSignal):
    event_name = "call-answer"


class IceCandidate(CallSignal):
    event_name = "ice-candidate"


class CallReject(CallSignal):
    event_name = "call-reject"


class CallEnd(CallSignal):
    event_name = "call-end"


CLIENT_EVENTS: dict[str, type[ClientEvent]] = {
    model.event_name: model
    for model in (
        UserOnline,
        PrivateMessage,
        CommunityMessage,
        GroupMessage,
        Typing,
        StopTyping,
        MessagesRead,
        MessageReaction,
        DeleteMessage,
        JoinCommunity,
        FriendRequest,
        FriendAccepted,
        FriendRejected,
        CallUser,
        CallAnswer,
        IceCandidate,
        CallReject,
        CallEnd,
    )
}


def parse_client_event(name: str, data: Any) -> ClientEvent:
    """Validate *data* against the model registered for *name*.

    Raises ``UnknownEventError`` for unregistered names and
    ``pydantic.ValidationError`` when required fields are missing.
    """

    model = CLIENT_EVENTS.get(name)
    if model is None:
        raise UnknownEventError(name)
    if data is None:
        data = {}
    return model.model_validate(data)


__all__ = [
    "CLIENT_EVENTS",
    "ClientEvent",
    "UnknownEventError",
    "parse_client_event",
    *(model.__name__ for model in CLIENT_EVENTS.values()),
]
