"""Community API endpoints: creation, access-code joins and member management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from starlette.concurrency import run_in_threadpool

from aether.realtime.channels import Channel

from app.api.deps import get_current_user
from app.config import get_settings
from app.models.enums import MembershipRole
from app.schemas import (
    CommunityCreate,
    CommunityDetail,
    CommunityJoin,
    CommunityRead,
    JoinRequestRead,
    JoinRequestResult,
    MemberAction,
    MessageRead,
    RoleChange,
    UserPublic,
)
from app.services import chat_store, membership_router

router = APIRouter(prefix="/communities", tags=["communities"])

settings = get_settings()


@router.post("", response_model=CommunityRead, status_code=status.HTTP_201_CREATED)
async def create_community(
    payload: CommunityCreate, current_user: UserPublic = Depends(get_current_user)
) -> CommunityRead:
    community = await run_in_threadpool(
        chat_store.create_community,
        current_user.id,
        name=payload.name,
        description=payload.description,
        avatar=payload.avatar,
        avatar_color=payload.avatar_color,
    )
    await membership_router.member_added(current_user.id, Channel.community(community.id))
    return community


@router.get("", response_model=list[CommunityRead])
async def list_communities(
    current_user: UserPublic = Depends(get_current_user),
) -> list[CommunityRead]:
    return await run_in_threadpool(chat_store.list_communities, current_user.id)


@router.post("/join", response_model=JoinRequestResult)
async def join_community(
    payload: CommunityJoin, current_user: UserPublic = Depends(get_current_user)
) -> JoinRequestResult:
    community = await run_in_threadpool(
        chat_store.request_join, current_user.id, payload.access_code
    )
    return JoinRequestResult(
        message="Join request sent. Waiting for approval.",
        community_id=community.id,
        community_name=community.name,
    )


@router.get("/{community_id}", response_model=CommunityDetail)
async def community_detail(
    community_id: str, current_user: UserPublic = Depends(get_current_user)
) -> CommunityDetail:
    return await run_in_threadpool(chat_store.community_detail, community_id, current_user.id)


@router.get("/{community_id}/requests", response_model=list[JoinRequestRead])
async def pending_requests(
    community_id: str, current_user: UserPublic = Depends(get_current_user)
) -> list[JoinRequestRead]:
    return await run_in_threadpool(chat_store.pending_requests, community_id, current_user.id)


@router.post("/{community_id}/approve")
async def approve_member(
    community_id: str,
    payload: MemberAction,
    current_user: UserPublic = Depends(get_current_user),
) -> dict[str, object]:
    """Activate a pending member and subscribe their live connections."""

    user = await run_in_threadpool(
        chat_store.approve_member, community_id, current_user.id, payload.user_id
    )
    await membership_router.member_added(
        user.id, Channel.community(community_id), username=user.username
    )
    return {"message": "Member approved", "user": user.model_dump(mode="json")}


@router.post("/{community_id}/reject")
async def reject_member(
    community_id: str,
    payload: MemberAction,
    current_user: UserPublic = Depends(get_current_user),
) -> dict[str, str]:
    await run_in_threadpool(
        chat_store.reject_member, community_id, current_user.id, payload.user_id
    )
    return {"message": "Request rejected"}


@router.get("/{community_id}/messages", response_model=list[MessageRead])
async def community_history(
    community_id: str,
    limit: int = Query(
        default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit
    ),
    current_user: UserPublic = Depends(get_current_user),
) -> list[MessageRead]:
    return await run_in_threadpool(
        chat_store.channel_history, Channel.community(community_id), current_user.id, limit=limit
    )


@router.get("/{community_id}/code")
async def access_code(
    community_id: str, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, str]:
    code = await run_in_threadpool(
        chat_store.community_access_code, community_id, current_user.id
    )
    return {"access_code": code}


@router.post("/{community_id}/promote", response_model=RoleChange)
async def toggle_admin(
    community_id: str,
    payload: MemberAction,
    current_user: UserPublic = Depends(get_current_user),
) -> RoleChange:
    new_role = await run_in_threadpool(
        chat_store.toggle_admin, community_id, current_user.id, payload.user_id
    )
    verb = "promoted to admin" if new_role is MembershipRole.ADMIN else "demoted to member"
    return RoleChange(message=f"User {verb}", new_role=new_role)


@router.post("/{community_id}/kick")
async def kick_member(
    community_id: str,
    payload: MemberAction,
    current_user: UserPublic = Depends(get_current_user),
) -> dict[str, str]:
    await run_in_threadpool(
        chat_store.kick_member, community_id, current_user.id, payload.user_id
    )
    await membership_router.member_removed(payload.user_id, Channel.community(community_id))
    return {"message": "Member removed"}


@router.post("/{community_id}/leave")
async def leave_community(
    community_id: str, current_user: UserPublic = Depends(get_current_user)
) -> dict[str, str]:
    await run_in_threadpool(chat_store.leave_community, community_id, current_user.id)
    await membership_router.member_removed(current_user.id, Channel.community(community_id))
    return {"message": "Left community"}
