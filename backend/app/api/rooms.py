"""Group room API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from starlette.concurrency import run_in_threadpool

from aether.realtime.channels import Channel

from app.api.deps import get_current_user
from app.config import get_settings
from app.schemas import MessageRead, RoomCreate, RoomRead, UserPublic
from app.services import chat_store, membership_router

router = APIRouter(prefix="/rooms", tags=["rooms"])

settings = get_settings()


@router.get("", response_model=list[RoomRead])
async def list_rooms(current_user: UserPublic = Depends(get_current_user)) -> list[RoomRead]:
    return await run_in_threadpool(chat_store.list_rooms, current_user.id)


@router.post("", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
async def create_room(
    payload: RoomCreate, current_user: UserPublic = Depends(get_current_user)
) -> RoomRead:
    """Create a room; every member's live connections start receiving it at once."""

    room, member_ids = await run_in_threadpool(
        chat_store.create_room, current_user.id, name=payload.name, member_ids=payload.member_ids
    )
    await membership_router.members_added(member_ids, Channel.room(room.id))
    return room


@router.get("/{room_id}/messages", response_model=list[MessageRead])
async def room_history(
    room_id: str,
    limit: int = Query(
        default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit
    ),
    current_user: UserPublic = Depends(get_current_user),
) -> list[MessageRead]:
    return await run_in_threadpool(
        chat_store.channel_history, Channel.room(room_id), current_user.id, limit=limit
    )
