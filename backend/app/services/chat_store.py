"""Persistence contract used by the realtime core and the HTTP layer.

Every public method opens its own short-lived session, commits or rolls back
before returning and hands out pydantic schemas instead of ORM instances, so
results can cross thread boundaries safely. Failures surface as
``ChatStoreError`` subclasses; a failed call never leaves partial writes.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Sequence

from sqlalchemy import and_, case, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from aether.realtime.channels import Channel, ChannelKind

from app.config import get_settings
from app.models import (
    Community,
    CommunityMember,
    DeletedMessage,
    Friendship,
    FriendshipStatus,
    MembershipRole,
    MembershipStatus,
    Message,
    MessageKind,
    MessageReaction,
    Room,
    RoomMember,
    User,
    friendship_pair_key,
)
from app.schemas.communities import (
    CommunityDetail,
    CommunityMemberRead,
    CommunityRead,
    JoinRequestRead,
)
from app.schemas.friends import FriendRequestRead, FriendshipRead
from app.schemas.messages import (
    MessageReactionSummary,
    MessageRead,
    MessageRoute,
    ReactionUpdate,
    UserPublic,
)
from app.schemas.rooms import RoomRead

logger = logging.getLogger(__name__)

settings = get_settings()

ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_ACCESS_CODE_ATTEMPTS = 10
_TOGGLE_ATTEMPTS = 3
_MANAGER_ROLES = {MembershipRole.OWNER, MembershipRole.ADMIN}


class ChatStoreError(Exception):
    """Base class for failures reported by the chat store."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ChatStoreError):
    status_code = 404


class PermissionDeniedError(ChatStoreError):
    status_code = 403


class ConflictError(ChatStoreError):
    status_code = 409


class InvalidRequestError(ChatStoreError):
    status_code = 400


class StorageError(ChatStoreError):
    """Raised when the database itself fails."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_access_code(length: int | None = None) -> str:
    size = length or settings.community_access_code_length
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(size))


class ChatStore:
    """Transactional access to users, messages, memberships and reactions."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def bind(self, session_factory: sessionmaker[Session]) -> None:
        """Point the store at another database (used by tests and CLI tools)."""

        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except ChatStoreError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Chat store operation failed")
            raise StorageError("Storage operation failed") from exc
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Users and presence
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> UserPublic | None:
        with self._session() as db:
            user = db.get(User, user_id)
            return UserPublic.model_validate(user) if user is not None else None

    def require_user(self, user_id: str) -> UserPublic:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(self, exclude_user_id: str) -> list[UserPublic]:
        with self._session() as db:
            stmt = (
                select(User)
                .where(User.id != exclude_user_id)
                .order_by(User.online.desc(), User.username.asc())
            )
            return [UserPublic.model_validate(user) for user in db.scalars(stmt)]

    def set_presence(self, user_id: str, online: bool) -> datetime:
        """Persist the online flag together with a fresh last-seen timestamp."""

        seen_at = _utcnow()
        with self._session() as db:
            db.execute(
                update(User).where(User.id == user_id).values(online=online, last_seen=seen_at)
            )
            db.commit()
        return seen_at

    # ------------------------------------------------------------------
    # Channels and membership checks
    # ------------------------------------------------------------------
    def active_channels(self, user_id: str) -> list[Channel]:
        """Return the self channel plus every active community and room membership."""

        with self._session() as db:
            communities = db.scalars(
                select(CommunityMember.community_id).where(
                    CommunityMember.user_id == user_id,
                    CommunityMember.status == MembershipStatus.ACTIVE,
                )
            ).all()
            rooms = db.scalars(
                select(RoomMember.room_id).where(
                    RoomMember.user_id == user_id,
                    RoomMember.status == MembershipStatus.ACTIVE,
                )
            ).all()
        channels = [Channel.user(user_id)]
        channels.extend(Channel.community(community_id) for community_id in communities)
        channels.extend(Channel.room(room_id) for room_id in rooms)
        return channels

    def is_active_member(self, channel: Channel, user_id: str) -> bool:
        if channel.kind is ChannelKind.USER:
            return channel.id == user_id
        with self._session() as db:
            return self._active_membership(db, channel, user_id) is not None

    def community_member_ids(self, community_id: str) -> list[str]:
        with self._session() as db:
            return list(
                db.scalars(
                    select(CommunityMember.user_id).where(
                        CommunityMember.community_id == community_id,
                        CommunityMember.status == MembershipStatus.ACTIVE,
                    )
                )
            )

    @staticmethod
    def _active_membership(
        db: Session, channel: Channel, user_id: str
    ) -> CommunityMember | RoomMember | None:
        if channel.kind is ChannelKind.COMMUNITY:
            model = CommunityMember
            stmt = select(CommunityMember).where(
                CommunityMember.community_id == channel.id,
                CommunityMember.user_id == user_id,
            )
        elif channel.kind is ChannelKind.ROOM:
            model = RoomMember
            stmt = select(RoomMember).where(
                RoomMember.room_id == channel.id, RoomMember.user_id == user_id
            )
        else:
            return None
        return db.execute(stmt.where(model.status == MembershipStatus.ACTIVE)).scalar_one_or_none()

    def _ensure_message_access(self, db: Session, message: Message, user_id: str) -> None:
        if user_id in (message.sender_id, message.receiver_id):
            return
        channel = self._message_channel(message)
        if channel is not None and self._active_membership(db, channel, user_id) is not None:
            return
        raise PermissionDeniedError("No access to this message")

    @staticmethod
    def _message_channel(message: Message) -> Channel | None:
        if message.community_id is not None:
            return Channel.community(message.community_id)
        if message.room_id is not None:
            return Channel.room(message.room_id)
        return None

    @staticmethod
    def _route(message: Message) -> MessageRoute:
        return MessageRoute(
            message_id=message.id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            room_id=message.room_id,
            community_id=message.community_id,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def create_message(
        self,
        sender_id: str,
        *,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        receiver_id: str | None = None,
        channel: Channel | None = None,
        reply_to_id: str | None = None,
    ) -> MessageRead:
        """Persist a message for exactly one destination and return the joined record."""

        if (receiver_id is None) == (channel is None):
            raise InvalidRequestError("A message needs exactly one destination")
        if channel is not None and channel.kind is ChannelKind.USER:
            raise InvalidRequestError("Direct messages are addressed by receiver")
        if not content or not content.strip():
            raise InvalidRequestError("Message content must not be empty")
        if len(content) > settings.chat_message_max_length:
            raise InvalidRequestError(
                f"Message exceeds maximum length of {settings.chat_message_max_length} characters"
            )

        with self._session() as db:
            if db.get(User, sender_id) is None:
                raise NotFoundError("Sender not found")
            if receiver_id is not None and db.get(User, receiver_id) is None:
                raise InvalidRequestError("Unknown receiver")
            if channel is not None and self._active_membership(db, channel, sender_id) is None:
                raise PermissionDeniedError("Not an active member")
            if reply_to_id is not None and db.get(Message, reply_to_id) is None:
                raise InvalidRequestError("Replied-to message not found")

            message = Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                room_id=channel.id if channel is not None and channel.kind is ChannelKind.ROOM else None,
                community_id=(
                    channel.id if channel is not None and channel.kind is ChannelKind.COMMUNITY else None
                ),
                content=content,
                kind=kind,
                reply_to_id=reply_to_id,
                read=False,
            )
            db.add(message)
            db.commit()
            return self._serialize_many(db, [message], viewer_id=sender_id)[0]

    def get_message(self, message_id: str, viewer_id: str | None = None) -> MessageRead | None:
        with self._session() as db:
            message = db.get(Message, message_id)
            if message is None:
                return None
            return self._serialize_many(db, [message], viewer_id=viewer_id)[0]

    def direct_history(
        self, user_id: str, peer_id: str, *, limit: int, offset: int = 0
    ) -> list[MessageRead]:
        with self._session() as db:
            stmt = (
                select(Message)
                .where(
                    or_(
                        and_(Message.sender_id == user_id, Message.receiver_id == peer_id),
                        and_(Message.sender_id == peer_id, Message.receiver_id == user_id),
                    ),
                    Message.id.not_in(self._suppressed_ids(user_id)),
                )
                .order_by(Message.created_at.asc())
                .limit(limit)
                .offset(offset)
            )
            messages = list(db.scalars(stmt))
            return self._serialize_many(db, messages, viewer_id=user_id)

    def channel_history(self, channel: Channel, viewer_id: str, *, limit: int) -> list[MessageRead]:
        """Return the latest *limit* messages of a room or community, oldest first."""

        column = {
            ChannelKind.COMMUNITY: Message.community_id,
            ChannelKind.ROOM: Message.room_id,
        }.get(channel.kind)
        if column is None:
            raise InvalidRequestError("History is only available for rooms and communities")
        with self._session() as db:
            if self._active_membership(db, channel, viewer_id) is None:
                raise PermissionDeniedError("Not a member")
            stmt = (
                select(Message)
                .where(column == channel.id, Message.id.not_in(self._suppressed_ids(viewer_id)))
                .order_by(Message.created_at.desc())
                .limit(limit)
            )
            messages = list(db.scalars(stmt))
            messages.reverse()
            return self._serialize_many(db, messages, viewer_id=viewer_id)

    def unread_counts(self, user_id: str) -> dict[str, int]:
        with self._session() as db:
            stmt = (
                select(Message.sender_id, func.count())
                .where(
                    Message.receiver_id == user_id,
                    Message.read.is_(False),
                    Message.id.not_in(self._suppressed_ids(user_id)),
                )
                .group_by(Message.sender_id)
            )
            return {sender_id: count for sender_id, count in db.execute(stmt)}

    def mark_read(self, receiver_id: str, sender_id: str) -> int:
        """Flip every unread direct message from *sender_id* to *receiver_id*."""

        with self._session() as db:
            result = db.execute(
                update(Message)
                .where(
                    Message.sender_id == sender_id,
                    Message.receiver_id == receiver_id,
                    Message.read.is_(False),
                )
                .values(read=True)
            )
            db.commit()
            return result.rowcount or 0

    @staticmethod
    def _suppressed_ids(user_id: str):
        return select(DeletedMessage.message_id).where(DeletedMessage.user_id == user_id)

    def _serialize_many(
        self, db: Session, messages: Sequence[Message], *, viewer_id: str | None
    ) -> list[MessageRead]:
        if not messages:
            return []
        message_ids = [message.id for message in messages]

        sender_ids = {message.sender_id for message in messages}
        reply_ids = {message.reply_to_id for message in messages if message.reply_to_id}
        replies: dict[str, Message] = {}
        if reply_ids:
            replies = {
                reply.id: reply
                for reply in db.scalars(select(Message).where(Message.id.in_(reply_ids)))
            }
            sender_ids.update(reply.sender_id for reply in replies.values())
        users = {user.id: user for user in db.scalars(select(User).where(User.id.in_(sender_ids)))}

        reactions: dict[str, list[MessageReactionSummary]] = {}
        reaction_stmt = (
            select(
                MessageReaction.message_id,
                MessageReaction.emoji,
                func.count(),
                func.max(case((MessageReaction.user_id == viewer_id, 1), else_=0)),
            )
            .where(MessageReaction.message_id.in_(message_ids))
            .group_by(MessageReaction.message_id, MessageReaction.emoji)
            .order_by(MessageReaction.message_id, func.min(MessageReaction.id))
        )
        for message_id, emoji, count, mine in db.execute(reaction_stmt):
            reactions.setdefault(message_id, []).append(
                MessageReactionSummary(emoji=emoji, count=count, me=bool(mine))
            )

        serialized: list[MessageRead] = []
        for message in messages:
            sender = users.get(message.sender_id)
            reply = replies.get(message.reply_to_id) if message.reply_to_id else None
            reply_author = users.get(reply.sender_id) if reply is not None else None
            serialized.append(
                MessageRead(
                    id=message.id,
                    sender_id=message.sender_id,
                    receiver_id=message.receiver_id,
                    room_id=message.room_id,
                    community_id=message.community_id,
                    content=message.content,
                    type=message.kind,
                    timestamp=message.created_at,
                    read=message.read if message.receiver_id is not None else None,
                    sender_name=sender.username if sender is not None else "unknown",
                    sender_color=sender.avatar_color if sender is not None else None,
                    sender_avatar=sender.avatar if sender is not None else None,
                    reply_to_id=message.reply_to_id,
                    reply_to_content=reply.content if reply is not None else None,
                    reply_to_name=reply_author.username if reply_author is not None else None,
                    reactions=reactions.get(message.id, []),
                )
            )
        return serialized

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------
    def toggle_reaction(
        self, message_id: str, user_id: str, emoji: str
    ) -> tuple[ReactionUpdate, MessageRoute]:
        """Add the reaction if absent, remove it if present, and recount.

        The delete-or-insert runs in one transaction; a concurrent identical
        toggle that wins the unique constraint race makes this one retry, so two
        toggles always net out to no change.
        """

        with self._session() as db:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            self._ensure_message_access(db, message, user_id)
            route = self._route(message)

            for _ in range(_TOGGLE_ATTEMPTS):
                try:
                    removed = db.execute(
                        delete(MessageReaction).where(
                            MessageReaction.message_id == message_id,
                            MessageReaction.user_id == user_id,
                            MessageReaction.emoji == emoji,
                        )
                    ).rowcount
                    if not removed:
                        db.execute(
                            insert(MessageReaction).values(
                                message_id=message_id,
                                user_id=user_id,
                                emoji=emoji,
                                created_at=_utcnow(),
                            )
                        )
                    count = db.scalar(
                        select(func.count())
                        .select_from(MessageReaction)
                        .where(
                            MessageReaction.message_id == message_id,
                            MessageReaction.emoji == emoji,
                        )
                    )
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    continue
                outcome = ReactionUpdate(
                    messageId=message_id,
                    emoji=emoji,
                    userId=user_id,
                    count=count or 0,
                    reacted=not removed,
                )
                return outcome, route
        raise ConflictError("Reaction is being updated concurrently")

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete_for_self(self, message_id: str, requester_id: str) -> None:
        """Hide a message from *requester_id* only; the row itself stays."""

        with self._session() as db:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            self._ensure_message_access(db, message, requester_id)
            db.add(DeletedMessage(message_id=message_id, user_id=requester_id))
            try:
                db.commit()
            except IntegrityError:
                # Already hidden for this viewer.
                db.rollback()

    def delete_for_all(self, message_id: str, requester_id: str) -> MessageRoute:
        """Hard-delete a message together with its reactions and suppressions."""

        with self._session() as db:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFoundError("Message not found")
            if message.sender_id != requester_id:
                raise PermissionDeniedError("Only sender can delete for everyone")
            route = self._route(message)
            db.execute(delete(MessageReaction).where(MessageReaction.message_id == message_id))
            db.execute(delete(DeletedMessage).where(DeletedMessage.message_id == message_id))
            db.execute(delete(Message).where(Message.id == message_id))
            db.commit()
            return route

    # ------------------------------------------------------------------
    # Friendships
    # ------------------------------------------------------------------
    def friendship_between(self, first_user_id: str, second_user_id: str) -> FriendshipRead | None:
        with self._session() as db:
            friendship = db.execute(
                select(Friendship).where(
                    Friendship.pair_key == friendship_pair_key(first_user_id, second_user_id)
                )
            ).scalar_one_or_none()
            return FriendshipRead.model_validate(friendship) if friendship is not None else None

    def send_friend_request(self, sender_id: str, receiver_id: str) -> FriendshipRead:
        if sender_id == receiver_id:
            raise InvalidRequestError("Cannot add yourself")
        pair_key = friendship_pair_key(sender_id, receiver_id)
        with self._session() as db:
            if db.get(User, receiver_id) is None:
                raise NotFoundError("User not found")
            existing = db.execute(
                select(Friendship).where(Friendship.pair_key == pair_key)
            ).scalar_one_or_none()
            if existing is not None:
                if existing.status is FriendshipStatus.ACCEPTED:
                    raise ConflictError("Already friends")
                if existing.status is FriendshipStatus.PENDING:
                    raise ConflictError("Request already pending")
                existing.sender_id = sender_id
                existing.receiver_id = receiver_id
                existing.status = FriendshipStatus.PENDING
                existing.created_at = _utcnow()
                friendship = existing
            else:
                friendship = Friendship(
                    sender_id=sender_id,
                    receiver_id=receiver_id,
                    pair_key=pair_key,
                    status=FriendshipStatus.PENDING,
                )
                db.add(friendship)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError("Request already pending") from None
            return FriendshipRead.model_validate(friendship)

    def _decide_friend_request(
        self, request_id: int, user_id: str, status: FriendshipStatus
    ) -> FriendshipRead:
        with self._session() as db:
            result = db.execute(
                update(Friendship)
                .where(
                    Friendship.id == request_id,
                    Friendship.receiver_id == user_id,
                    Friendship.status == FriendshipStatus.PENDING,
                )
                .values(status=status)
            )
            if not result.rowcount:
                db.rollback()
                raise NotFoundError("Request not found")
            db.commit()
            friendship = db.get(Friendship, request_id)
            return FriendshipRead.model_validate(friendship)

    def accept_friend_request(self, request_id: int, user_id: str) -> FriendshipRead:
        return self._decide_friend_request(request_id, user_id, FriendshipStatus.ACCEPTED)

    def reject_friend_request(self, request_id: int, user_id: str) -> FriendshipRead:
        return self._decide_friend_request(request_id, user_id, FriendshipStatus.REJECTED)

    def remove_friend(self, user_id: str, friend_id: str) -> bool:
        with self._session() as db:
            result = db.execute(
                delete(Friendship).where(
                    Friendship.pair_key == friendship_pair_key(user_id, friend_id),
                    Friendship.status == FriendshipStatus.ACCEPTED,
                )
            )
            db.commit()
            return bool(result.rowcount)

    @staticmethod
    def _counterpart_ids(user_id: str, statuses: Iterable[FriendshipStatus]):
        return select(
            case((Friendship.sender_id == user_id, Friendship.receiver_id), else_=Friendship.sender_id)
        ).where(
            or_(Friendship.sender_id == user_id, Friendship.receiver_id == user_id),
            Friendship.status.in_(list(statuses)),
        )

    def list_friends(self, user_id: str) -> list[UserPublic]:
        with self._session() as db:
            stmt = (
                select(User)
                .where(User.id.in_(self._counterpart_ids(user_id, [FriendshipStatus.ACCEPTED])))
                .order_by(User.online.desc(), User.username.asc())
            )
            return [UserPublic.model_validate(user) for user in db.scalars(stmt)]

    def friend_suggestions(self, user_id: str, *, limit: int = 50) -> list[UserPublic]:
        with self._session() as db:
            related = self._counterpart_ids(
                user_id, [FriendshipStatus.PENDING, FriendshipStatus.ACCEPTED]
            )
            stmt = (
                select(User)
                .where(User.id != user_id, User.id.not_in(related))
                .order_by(User.created_at.desc())
                .limit(limit)
            )
            return [UserPublic.model_validate(user) for user in db.scalars(stmt)]

    def incoming_requests(self, user_id: str) -> list[FriendRequestRead]:
        return self._pending_requests(Friendship.receiver_id == user_id, Friendship.sender_id)

    def sent_requests(self, user_id: str) -> list[FriendRequestRead]:
        return self._pending_requests(Friendship.sender_id == user_id, Friendship.receiver_id)

    def _pending_requests(self, condition, counterpart_column) -> list[FriendRequestRead]:
        with self._session() as db:
            stmt = (
                select(Friendship, User)
                .join(User, User.id == counterpart_column)
                .where(condition, Friendship.status == FriendshipStatus.PENDING)
                .order_by(Friendship.created_at.desc())
            )
            return [
                FriendRequestRead(
                    request_id=friendship.id,
                    requested_at=friendship.created_at,
                    user=UserPublic.model_validate(user),
                )
                for friendship, user in db.execute(stmt)
            ]

    # ------------------------------------------------------------------
    # Communities
    # ------------------------------------------------------------------
    def create_community(
        self,
        owner_id: str,
        *,
        name: str,
        description: str = "",
        avatar: str | None = None,
        avatar_color: str | None = None,
    ) -> CommunityRead:
        """Create a community and its single owner membership atomically."""

        cleaned = (name or "").strip()
        if len(cleaned) < 2:
            raise InvalidRequestError("Name required (min 2 chars)")
        with self._session() as db:
            access_code = None
            for _ in range(_ACCESS_CODE_ATTEMPTS):
                candidate = generate_access_code()
                taken = db.scalar(select(Community.id).where(Community.access_code == candidate))
                if taken is None:
                    access_code = candidate
                    break
            if access_code is None:
                raise ConflictError("Could not allocate a unique access code")

            community = Community(
                name=cleaned,
                description=description or "",
                access_code=access_code,
                avatar=avatar or "default",
                avatar_color=avatar_color or "#CC0000",
                created_by=owner_id,
                max_members=settings.community_default_max_members,
            )
            db.add(community)
            db.flush()
            db.add(
                CommunityMember(
                    community_id=community.id,
                    user_id=owner_id,
                    role=MembershipRole.OWNER,
                    status=MembershipStatus.ACTIVE,
                )
            )
            db.commit()
            return self._community_read(db, community, MembershipRole.OWNER)

    def _community_read(
        self, db: Session, community: Community, role: MembershipRole
    ) -> CommunityRead:
        return CommunityRead(
            id=community.id,
            name=community.name,
            description=community.description,
            avatar=community.avatar,
            avatar_color=community.avatar_color,
            created_by=community.created_by,
            max_members=community.max_members,
            created_at=community.created_at,
            role=role,
            member_count=self._active_member_count(db, community.id),
            access_code=community.access_code if role in _MANAGER_ROLES else None,
        )

    @staticmethod
    def _active_member_count(db: Session, community_id: str) -> int:
        return db.scalar(
            select(func.count())
            .select_from(CommunityMember)
            .where(
                CommunityMember.community_id == community_id,
                CommunityMember.status == MembershipStatus.ACTIVE,
            )
        ) or 0

    def _require_community_role(
        self,
        db: Session,
        community_id: str,
        user_id: str,
        allowed: set[MembershipRole] | None = None,
        detail: str = "Insufficient permissions",
    ) -> CommunityMember:
        member = self._active_membership(db, Channel.community(community_id), user_id)
        if member is None or (allowed is not None and member.role not in allowed):
            raise PermissionDeniedError(detail)
        return member

    def list_communities(self, user_id: str) -> list[CommunityRead]:
        with self._session() as db:
            stmt = (
                select(Community, CommunityMember.role)
                .join(CommunityMember, CommunityMember.community_id == Community.id)
                .where(
                    CommunityMember.user_id == user_id,
                    CommunityMember.status == MembershipStatus.ACTIVE,
                )
                .order_by(Community.created_at.desc())
            )
            return [self._community_read(db, community, role) for community, role in db.execute(stmt)]

    def community_detail(self, community_id: str, user_id: str) -> CommunityDetail:
        with self._session() as db:
            community = db.get(Community, community_id)
            member = self._active_membership(db, Channel.community(community_id), user_id)
            if community is None or member is None:
                raise NotFoundError("Community not found or not a member")
            role_order = case(
                (CommunityMember.role == MembershipRole.OWNER, 0),
                (CommunityMember.role == MembershipRole.ADMIN, 1),
                else_=2,
            )
            stmt = (
                select(User, CommunityMember.role)
                .join(CommunityMember, CommunityMember.user_id == User.id)
                .where(
                    CommunityMember.community_id == community_id,
                    CommunityMember.status == MembershipStatus.ACTIVE,
                )
                .order_by(role_order, User.username)
            )
            members = [
                CommunityMemberRead(**UserPublic.model_validate(user).model_dump(), role=role)
                for user, role in db.execute(stmt)
            ]
            summary = self._community_read(db, community, member.role)
            return CommunityDetail(**summary.model_dump(), members=members)

    def request_join(self, user_id: str, access_code: str) -> CommunityRead:
        """Create a pending membership for the community behind *access_code*."""

        code = (access_code or "").strip().upper()
        if not code:
            raise InvalidRequestError("Access code required")
        with self._session() as db:
            community = db.execute(
                select(Community).where(Community.access_code == code)
            ).scalar_one_or_none()
            if community is None:
                raise NotFoundError("Invalid access code")
            existing = db.get(CommunityMember, (community.id, user_id))
            if existing is not None:
                raise self._membership_conflict(existing)
            if self._active_member_count(db, community.id) >= community.max_members:
                raise PermissionDeniedError("Community is full")
            db.add(
                CommunityMember(
                    community_id=community.id,
                    user_id=user_id,
                    role=MembershipRole.MEMBER,
                    status=MembershipStatus.PENDING,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.get(CommunityMember, (community.id, user_id))
                if existing is None:
                    raise
                raise self._membership_conflict(existing) from None
            return self._community_read(db, community, MembershipRole.MEMBER)

    @staticmethod
    def _membership_conflict(existing: CommunityMember) -> ConflictError:
        if existing.status is MembershipStatus.ACTIVE:
            return ConflictError("Already a member")
        return ConflictError("Join request already pending")

    def pending_requests(self, community_id: str, actor_id: str) -> list[JoinRequestRead]:
        with self._session() as db:
            self._require_community_role(
                db, community_id, actor_id, _MANAGER_ROLES, "Only owner/admin can view requests"
            )
            stmt = (
                select(User, CommunityMember.joined_at)
                .join(CommunityMember, CommunityMember.user_id == User.id)
                .where(
                    CommunityMember.community_id == community_id,
                    CommunityMember.status == MembershipStatus.PENDING,
                )
                .order_by(CommunityMember.joined_at.desc())
            )
            return [
                JoinRequestRead(user=UserPublic.model_validate(user), requested_at=joined_at)
                for user, joined_at in db.execute(stmt)
            ]

    def approve_member(self, community_id: str, actor_id: str, user_id: str) -> UserPublic:
        with self._session() as db:
            self._require_community_role(
                db, community_id, actor_id, _MANAGER_ROLES, "Only owner/admin can approve"
            )
            result = db.execute(
                update(CommunityMember)
                .where(
                    CommunityMember.community_id == community_id,
                    CommunityMember.user_id == user_id,
                    CommunityMember.status == MembershipStatus.PENDING,
                )
                .values(status=MembershipStatus.ACTIVE, joined_at=_utcnow())
            )
            if not result.rowcount:
                raise NotFoundError("No pending request from this user")
            db.commit()
            return UserPublic.model_validate(db.get(User, user_id))

    def reject_member(self, community_id: str, actor_id: str, user_id: str) -> None:
        with self._session() as db:
            self._require_community_role(
                db, community_id, actor_id, _MANAGER_ROLES, "Only owner/admin can reject"
            )
            db.execute(
                delete(CommunityMember).where(
                    CommunityMember.community_id == community_id,
                    CommunityMember.user_id == user_id,
                    CommunityMember.status == MembershipStatus.PENDING,
                )
            )
            db.commit()

    def community_access_code(self, community_id: str, actor_id: str) -> str:
        with self._session() as db:
            self._require_community_role(
                db,
                community_id,
                actor_id,
                _MANAGER_ROLES,
                "Only owner/admin can view the access code",
            )
            return db.get(Community, community_id).access_code

    def toggle_admin(self, community_id: str, actor_id: str, user_id: str) -> MembershipRole:
        """Owner-only switch between admin and member for another active member."""

        with self._session() as db:
            self._require_community_role(
                db, community_id, actor_id, {MembershipRole.OWNER}, "Only owner can promote"
            )
            target = self._active_membership(db, Channel.community(community_id), user_id)
            if target is None:
                raise NotFoundError("User not found in community")
            if target.role is MembershipRole.OWNER:
                raise InvalidRequestError("Cannot change owner role")
            target.role = (
                MembershipRole.MEMBER if target.role is MembershipRole.ADMIN else MembershipRole.ADMIN
            )
            new_role = target.role
            db.commit()
            return new_role

    def kick_member(self, community_id: str, actor_id: str, user_id: str) -> None:
        with self._session() as db:
            actor = self._require_community_role(db, community_id, actor_id, _MANAGER_ROLES)
            target = self._active_membership(db, Channel.community(community_id), user_id)
            if target is None:
                raise NotFoundError("User not in community")
            if target.role is MembershipRole.OWNER:
                raise PermissionDeniedError("Cannot kick the owner")
            if target.role is MembershipRole.ADMIN and actor.role is not MembershipRole.OWNER:
                raise PermissionDeniedError("Only owner can kick admins")
            db.delete(target)
            db.commit()

    def leave_community(self, community_id: str, user_id: str) -> None:
        with self._session() as db:
            member = self._active_membership(db, Channel.community(community_id), user_id)
            if member is None:
                raise NotFoundError("Not a member")
            if member.role is MembershipRole.OWNER:
                raise PermissionDeniedError("Owner cannot leave. Transfer ownership first.")
            db.delete(member)
            db.commit()

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    def create_room(self, creator_id: str, *, name: str, member_ids: Sequence[str]) -> tuple[RoomRead, list[str]]:
        """Create a room with its creator as owner; returns the room and all member ids."""

        cleaned = (name or "").strip()
        if not cleaned:
            raise InvalidRequestError("Room name and member IDs required")
        others = [member_id for member_id in dict.fromkeys(member_ids) if member_id != creator_id]
        with self._session() as db:
            if others:
                known = set(db.scalars(select(User.id).where(User.id.in_(others))))
                missing = [member_id for member_id in others if member_id not in known]
                if missing:
                    raise InvalidRequestError("Unknown member: " + ", ".join(missing))
            room = Room(name=cleaned, created_by=creator_id)
            db.add(room)
            db.flush()
            db.add(RoomMember(room_id=room.id, user_id=creator_id, role=MembershipRole.OWNER))
            for member_id in others:
                db.add(RoomMember(room_id=room.id, user_id=member_id, role=MembershipRole.MEMBER))
            db.commit()
            read = RoomRead(
                id=room.id,
                name=room.name,
                type=room.type,
                created_by=room.created_by,
                created_at=room.created_at,
                member_count=len(others) + 1,
            )
            return read, [creator_id, *others]

    def list_rooms(self, user_id: str) -> list[RoomRead]:
        with self._session() as db:
            member_count = (
                select(func.count())
                .select_from(RoomMember)
                .where(RoomMember.room_id == Room.id, RoomMember.status == MembershipStatus.ACTIVE)
                .correlate(Room)
                .scalar_subquery()
            )
            stmt = (
                select(Room, member_count)
                .join(RoomMember, RoomMember.room_id == Room.id)
                .where(RoomMember.user_id == user_id, RoomMember.status == MembershipStatus.ACTIVE)
                .order_by(Room.created_at.desc())
            )
            return [
                RoomRead(
                    id=room.id,
                    name=room.name,
                    type=room.type,
                    created_by=room.created_by,
                    created_at=room.created_at,
                    member_count=count,
                )
                for room, count in db.execute(stmt)
            ]
