"""Schemas for communities and their membership workflow."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import MembershipRole
from app.schemas.messages import UserPublic


class CommunityCreate(BaseModel):
    name: str = Field(..., max_length=128)
    description: str = Field(default="", max_length=2000)
    avatar: str | None = None
    avatar_color: str | None = None


class CommunityJoin(BaseModel):
    access_code: str = Field(..., min_length=1, max_length=32)


class MemberAction(BaseModel):
    """Body of owner/admin actions that target another member."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)


class CommunityRead(BaseModel):
    id: str
    name: str
    description: str
    avatar: str
    avatar_color: str
    created_by: str
    max_members: int
    created_at: datetime
    role: MembershipRole
    member_count: int
    access_code: str | None = Field(
        default=None, description="Only disclosed to owners and admins"
    )


class CommunityMemberRead(UserPublic):
    role: MembershipRole


class CommunityDetail(CommunityRead):
    members: list[CommunityMemberRead] = Field(default_factory=list)


class JoinRequestRead(BaseModel):
    user: UserPublic
    requested_at: datetime


class JoinRequestResult(BaseModel):
    message: str
    community_id: str
    community_name: str


class RoleChange(BaseModel):
    message: str
    new_role: MembershipRole
