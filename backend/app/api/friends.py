"""Friend list and friend request endpoints.

The HTTP calls only change stored state; clients follow up with the
``friend-request`` / ``friend-accepted`` / ``friend-rejected`` socket events,
which are relayed once the stored friendship matches.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_current_user
from app.schemas import FriendRequestCreate, FriendRequestDecision, FriendRequestRead, UserPublic
from app.services import chat_store

router = APIRouter(tags=["friends"])


@router.get("/friends", response_model=list[UserPublic])
async def list_friends(current_user: UserPublic = Depends(get_current_user)) -> list[UserPublic]:
    return await run_in_threadpool(chat_store.list_friends, current_user.id)


@router.get("/suggestions", response_model=list[UserPublic])
async def suggestions(current_user: UserPublic = Depends(get_current_user)) -> list[UserPublic]:
    return await run_in_threadpool(chat_store.friend_suggestions, current_user.id)


@router.get("/friends/requests", response_model=list[FriendRequestRead])
async def incoming_requests(
    current_user: UserPublic = Depends(get_current_user),
) -> list[FriendRequestRead]:
    return await run_in_threadpool(chat_store.incoming_requests, current_user.id)


@router.get("/friends/sent", response_model=list[FriendRequestRead])
async def sent_requests(
    current_user: UserPublic = Depends(get_current_user),
) -> list[FriendRequestRead]:
    return await run_in_threadpool(chat_store.sent_requests, current_user.id)


@router.post("/friends/request")
async def send_request(
    payload: FriendRequestCreate, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, object]:
    friendship = await run_in_threadpool(
        chat_store.send_friend_request, current_user.id, payload.user_id
    )
    return {
        "status": friendship.status.value,
        "requestId": friendship.id,
        "message": "Friend request sent",
    }


@router.post("/friends/accept")
async def accept_request(
    payload: FriendRequestDecision, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, object]:
    friendship = await run_in_threadpool(
        chat_store.accept_friend_request, payload.request_id, current_user.id
    )
    friend = await run_in_threadpool(chat_store.require_user, friendship.sender_id)
    return {"message": "Friend request accepted", "friend": friend.model_dump(mode="json")}


@router.post("/friends/reject")
async def reject_request(
    payload: FriendRequestDecision, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, str]:
    await run_in_threadpool(chat_store.reject_friend_request, payload.request_id, current_user.id)
    return {"message": "Friend request rejected"}


@router.delete("/friends/{friend_id}")
async def remove_friend(
    friend_id: str, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, str]:
    await run_in_threadpool(chat_store.remove_friend, current_user.id, friend_id)
    return {"message": "Friend removed"}
