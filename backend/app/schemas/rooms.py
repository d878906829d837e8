"""Schemas for group rooms."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import RoomType


class RoomCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=128)
    member_ids: list[str] = Field(..., alias="memberIds")


class RoomRead(BaseModel):
    id: str
    name: str
    type: RoomType
    created_by: str | None
    created_at: datetime
    member_count: int
