from __future__ import annotations

from fastapi.testclient import TestClient


def _create(client: TestClient, headers: dict[str, str], name: str = "Ops") -> dict:
    response = client.post("/api/communities", json={"name": name}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_access_code_join_and_approval_flow(client: TestClient, make_user, auth_headers):
    owner, guest = make_user("owner"), make_user("guest")
    community = _create(client, auth_headers(owner))
    assert community["role"] == "owner"
    code = community["access_code"]

    joined = client.post(
        "/api/communities/join", json={"access_code": code.lower()}, headers=auth_headers(guest)
    )
    assert joined.status_code == 200, joined.text
    assert joined.json()["community_id"] == community["id"]

    again = client.post("/api/communities/join", json={"access_code": code}, headers=auth_headers(guest))
    assert again.status_code == 409
    assert again.json() == {"detail": "Join request already pending"}

    bad = client.post("/api/communities/join", json={"access_code": "ZZZZ9999"}, headers=auth_headers(guest))
    assert bad.status_code == 404

    hidden = client.get(f"/api/communities/{community['id']}", headers=auth_headers(guest))
    assert hidden.status_code == 404

    requests = client.get(f"/api/communities/{community['id']}/requests", headers=auth_headers(owner))
    assert [item["user"]["id"] for item in requests.json()] == [guest]
    assert (
        client.get(f"/api/communities/{community['id']}/requests", headers=auth_headers(guest)).status_code
        == 403
    )

    approved = client.post(
        f"/api/communities/{community['id']}/approve",
        json={"userId": guest},
        headers=auth_headers(owner),
    )
    assert approved.status_code == 200, approved.text
    assert approved.json()["user"]["username"] == "guest"

    listed = client.get("/api/communities", headers=auth_headers(guest)).json()
    assert [(item["id"], item["role"], item["access_code"]) for item in listed] == [
        (community["id"], "member", None)
    ]
    detail = client.get(f"/api/communities/{community['id']}", headers=auth_headers(guest)).json()
    assert [member["role"] for member in detail["members"]] == ["owner", "member"]

    code_for_member = client.get(f"/api/communities/{community['id']}/code", headers=auth_headers(guest))
    assert code_for_member.status_code == 403
    code_for_owner = client.get(f"/api/communities/{community['id']}/code", headers=auth_headers(owner))
    assert code_for_owner.json() == {"access_code": code}


def test_reject_join_request(client: TestClient, make_user, auth_headers):
    owner, guest = make_user("owner"), make_user("guest")
    community = _create(client, auth_headers(owner))
    client.post(
        "/api/communities/join",
        json={"access_code": community["access_code"]},
        headers=auth_headers(guest),
    )

    response = client.post(
        f"/api/communities/{community['id']}/reject", json={"userId": guest}, headers=auth_headers(owner)
    )
    assert response.json() == {"message": "Request rejected"}
    assert client.get(
        f"/api/communities/{community['id']}/requests", headers=auth_headers(owner)
    ).json() == []


def test_roles_kick_and_leave(client: TestClient, store, make_user, auth_headers):
    owner, admin, member = make_user("owner"), make_user("admin"), make_user("member")
    community = _create(client, auth_headers(owner))
    for user_id in (admin, member):
        store.request_join(user_id, community["access_code"])
        store.approve_member(community["id"], owner, user_id)

    promoted = client.post(
        f"/api/communities/{community['id']}/promote", json={"userId": admin}, headers=auth_headers(owner)
    )
    assert promoted.json() == {"message": "User promoted to admin", "new_role": "admin"}
    not_owner = client.post(
        f"/api/communities/{community['id']}/promote", json={"userId": member}, headers=auth_headers(admin)
    )
    assert not_owner.status_code == 403

    kick_owner = client.post(
        f"/api/communities/{community['id']}/kick", json={"userId": owner}, headers=auth_headers(admin)
    )
    assert kick_owner.status_code == 403
    kicked = client.post(
        f"/api/communities/{community['id']}/kick", json={"userId": member}, headers=auth_headers(admin)
    )
    assert kicked.json() == {"message": "Member removed"}
    history = client.get(f"/api/communities/{community['id']}/messages", headers=auth_headers(member))
    assert history.status_code == 403

    owner_leave = client.post(f"/api/communities/{community['id']}/leave", headers=auth_headers(owner))
    assert owner_leave.status_code == 403
    left = client.post(f"/api/communities/{community['id']}/leave", headers=auth_headers(admin))
    assert left.json() == {"message": "Left community"}
    assert store.community_member_ids(community["id"]) == [owner]


def test_community_validation(client: TestClient, make_user, auth_headers):
    owner = make_user("owner")

    short = client.post("/api/communities", json={"name": "x"}, headers=auth_headers(owner))
    assert short.status_code == 400
    assert short.json() == {"detail": "Name required (min 2 chars)"}
    missing = client.post("/api/communities", json={}, headers=auth_headers(owner))
    assert missing.status_code == 422
