"""HTTP endpoints for direct history, unread counts and deletion."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_current_user
from app.config import get_settings
from app.schemas import MessageRead, UserPublic
from app.services import chat_store, message_pipeline

router = APIRouter(tags=["messages"])

settings = get_settings()


@router.get("/users", response_model=list[UserPublic])
async def list_users(current_user: UserPublic = Depends(get_current_user)) -> list[UserPublic]:
    """Everyone except the caller, online users first."""

    return await run_in_threadpool(chat_store.list_users, current_user.id)


@router.get("/messages/{peer_id}", response_model=list[MessageRead])
async def direct_history(
    peer_id: str,
    limit: int = Query(
        default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit
    ),
    offset: int = Query(default=0, ge=0),
    current_user: UserPublic = Depends(get_current_user),
) -> list[MessageRead]:
    """Conversation with *peer_id* in server-timestamp order.

    Fetching the history marks every message received from the peer as read
    and notifies the peer's devices.
    """

    history = await run_in_threadpool(
        chat_store.direct_history, current_user.id, peer_id, limit=limit, offset=offset
    )
    if any(message.sender_id == peer_id and not message.read for message in history):
        await message_pipeline.mark_read(current_user.id, peer_id)
    return history


@router.get("/unread", response_model=dict[str, int])
async def unread_counts(current_user: UserPublic = Depends(get_current_user)) -> dict[str, int]:
    return await run_in_threadpool(chat_store.unread_counts, current_user.id)


@router.delete("/messages/{message_id}/for-me")
async def delete_for_me(
    message_id: str, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, str]:
    await message_pipeline.delete_for_self(message_id, current_user.id)
    return {"message": "Deleted for you"}


@router.delete("/messages/{message_id}/for-all")
async def delete_for_all(
    message_id: str, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, str | None]:
    route = await message_pipeline.delete_for_all(message_id, current_user.id)
    return {
        "message": "Deleted for everyone",
        "messageId": route.message_id,
        "communityId": route.community_id,
        "roomId": route.room_id,
        "receiverId": route.receiver_id,
    }
