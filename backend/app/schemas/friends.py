"""Schemas for friendships."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import FriendshipStatus
from app.schemas.messages import UserPublic


class FriendshipRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: str
    receiver_id: str
    status: FriendshipStatus
    created_at: datetime


class FriendRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)


class FriendRequestDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: int = Field(..., alias="requestId")


class FriendRequestRead(BaseModel):
    """Pending request with the counterpart's contact card."""

    request_id: int
    requested_at: datetime
    user: UserPublic
