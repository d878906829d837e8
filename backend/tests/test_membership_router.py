from __future__ import annotations

import pytest

from aether.realtime.channels import Channel
from app.services.membership import MEMBER_JOINED_EVENT, MembershipRouter


@pytest.fixture()
def router(store, connections) -> MembershipRouter:
    return MembershipRouter(store, connections)


@pytest.mark.anyio("asyncio")
async def test_attach_subscribes_to_active_memberships(
    router, store, connections, make_user, make_connection
):
    owner_id, guest_id = make_user("owner"), make_user("guest")
    community = store.create_community(owner_id, name="Ops")
    room, _ = store.create_room(owner_id, name="Trip", member_ids=[guest_id])
    store.request_join(guest_id, community.access_code)

    guest = make_connection(guest_id)
    channels = await router.attach(guest)

    assert channels == [Channel.user(guest_id), Channel.room(room.id)]
    assert connections.is_subscribed(guest.id, Channel.room(room.id))
    assert not connections.is_subscribed(guest.id, Channel.community(community.id))

    await router.detach(guest)
    assert connections.get(guest.id) is None
    assert connections.channels_for(guest.id) == []


@pytest.mark.anyio("asyncio")
async def test_approval_subscribes_live_connections_without_reconnect(
    router, store, connections, make_user, make_connection
):
    owner_id, guest_id = make_user("owner"), make_user("guest")
    community = store.create_community(owner_id, name="Ops")
    channel = Channel.community(community.id)
    owner = make_connection(owner_id)
    phone, laptop = make_connection(guest_id), make_connection(guest_id)
    for connection in (owner, phone, laptop):
        await router.attach(connection)

    store.request_join(guest_id, community.access_code)
    store.approve_member(community.id, owner_id, guest_id)
    assert await router.member_added(guest_id, channel, username="guest") == 2

    assert owner.websocket.events(MEMBER_JOINED_EVENT) == [
        {"communityId": community.id, "user": {"id": guest_id, "username": "guest"}}
    ]
    assert phone.websocket.events(MEMBER_JOINED_EVENT) == []
    assert laptop.websocket.events(MEMBER_JOINED_EVENT) == []

    await connections.broadcast(channel, "community-message", {"content": "welcome"})
    assert phone.websocket.events("community-message") == [{"content": "welcome"}]
    assert laptop.websocket.events("community-message") == [{"content": "welcome"}]

    await router.member_removed(guest_id, channel)
    await connections.broadcast(channel, "community-message", {"content": "bye"})
    assert len(phone.websocket.events("community-message")) == 1
    assert owner.websocket.events("community-message")[-1] == {"content": "bye"}


@pytest.mark.anyio("asyncio")
async def test_join_community_requires_membership(
    router, store, connections, make_user, make_connection
):
    owner_id, guest_id = make_user("owner"), make_user("guest")
    community = store.create_community(owner_id, name="Ops")
    owner, guest = make_connection(owner_id), make_connection(guest_id)
    await router.attach(owner)
    await router.attach(guest)

    assert await router.join_community(guest, community.id) is False
    assert not connections.is_subscribed(guest.id, Channel.community(community.id))

    store.request_join(guest_id, community.access_code)
    store.approve_member(community.id, owner_id, guest_id)
    assert await router.join_community(guest, community.id) is True
    assert connections.is_subscribed(guest.id, Channel.community(community.id))
    assert owner.websocket.events(MEMBER_JOINED_EVENT)[0]["user"]["id"] == guest_id
    assert guest.websocket.events(MEMBER_JOINED_EVENT) == []


@pytest.mark.anyio("asyncio")
async def test_new_room_reaches_every_member(router, store, connections, make_user, make_connection):
    creator_id, friend_id = make_user("creator"), make_user("friend")
    creator, friend = make_connection(creator_id), make_connection(friend_id)
    await router.attach(creator)
    await router.attach(friend)

    room, member_ids = store.create_room(creator_id, name="Trip", member_ids=[friend_id])
    await router.members_added(member_ids, Channel.room(room.id))

    assert await connections.broadcast(Channel.room(room.id), "group-message", {"content": "hi"}) == 2


@pytest.mark.anyio("asyncio")
async def test_kick_while_connecting_leaves_no_subscription(
    router, store, connections, make_user, make_connection, monkeypatch
):
    owner_id, guest_id = make_user("owner"), make_user("guest")
    community = store.create_community(owner_id, name="Ops")
    channel = Channel.community(community.id)
    store.request_join(guest_id, community.access_code)
    store.approve_member(community.id, owner_id, guest_id)
    owner = make_connection(owner_id)
    await router.attach(owner)

    load = router.channels_for
    calls = 0

    async def kicked_after_first_load(user_id: str) -> list[Channel]:
        nonlocal calls
        calls += 1
        channels = await load(user_id)
        if calls == 1:
            store.kick_member(community.id, owner_id, guest_id)
            await router.member_removed(guest_id, channel)
        return channels

    monkeypatch.setattr(router, "channels_for", kicked_after_first_load)
    guest = make_connection(guest_id)
    channels = await router.attach(guest)

    assert channels == [Channel.user(guest_id)]
    assert not connections.is_subscribed(guest.id, channel)
    await connections.broadcast(channel, "community-message", {"content": "after kick"})
    assert guest.websocket.events("community-message") == []


@pytest.mark.anyio("asyncio")
async def test_approval_while_connecting_subscribes(
    router, store, connections, make_user, make_connection, monkeypatch
):
    owner_id, guest_id = make_user("owner"), make_user("guest")
    community = store.create_community(owner_id, name="Ops")
    channel = Channel.community(community.id)
    store.request_join(guest_id, community.access_code)

    load = router.channels_for
    approved = False

    async def approved_after_first_load(user_id: str) -> list[Channel]:
        nonlocal approved
        channels = await load(user_id)
        if not approved:
            approved = True
            store.approve_member(community.id, owner_id, guest_id)
            await router.member_added(guest_id, channel, username="guest")
        return channels

    monkeypatch.setattr(router, "channels_for", approved_after_first_load)
    guest = make_connection(guest_id)
    await router.attach(guest)

    assert connections.is_subscribed(guest.id, channel)


@pytest.mark.anyio("asyncio")
async def test_join_after_approval_is_announced_once(
    router, store, connections, make_user, make_connection
):
    owner_id, guest_id = make_user("owner"), make_user("guest")
    community = store.create_community(owner_id, name="Ops")
    owner, guest = make_connection(owner_id), make_connection(guest_id)
    await router.attach(owner)
    await router.attach(guest)

    store.request_join(guest_id, community.access_code)
    store.approve_member(community.id, owner_id, guest_id)
    await router.member_added(guest_id, Channel.community(community.id), username="guest")

    assert await router.join_community(guest, community.id) is True
    assert len(owner.websocket.events(MEMBER_JOINED_EVENT)) == 1
