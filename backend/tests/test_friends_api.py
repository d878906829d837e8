from __future__ import annotations

from fastapi.testclient import TestClient


def test_friend_request_accept_and_remove(client: TestClient, make_user, auth_headers):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")

    sent = client.post("/api/friends/request", json={"userId": bob}, headers=auth_headers(alice))
    assert sent.status_code == 200, sent.text
    body = sent.json()
    assert body["status"] == "pending"

    duplicate = client.post("/api/friends/request", json={"userId": alice}, headers=auth_headers(bob))
    assert duplicate.status_code == 409

    incoming = client.get("/api/friends/requests", headers=auth_headers(bob)).json()
    assert [(item["request_id"], item["user"]["id"]) for item in incoming] == [(body["requestId"], alice)]
    outgoing = client.get("/api/friends/sent", headers=auth_headers(alice)).json()
    assert [item["user"]["id"] for item in outgoing] == [bob]

    wrong_user = client.post(
        "/api/friends/accept", json={"requestId": body["requestId"]}, headers=auth_headers(alice)
    )
    assert wrong_user.status_code == 404

    accepted = client.post(
        "/api/friends/accept", json={"requestId": body["requestId"]}, headers=auth_headers(bob)
    )
    assert accepted.status_code == 200
    assert accepted.json()["friend"]["id"] == alice

    friends = client.get("/api/friends", headers=auth_headers(alice)).json()
    assert [friend["id"] for friend in friends] == [bob]
    suggestions = client.get("/api/suggestions", headers=auth_headers(alice)).json()
    assert [user["id"] for user in suggestions] == [carol]

    removed = client.delete(f"/api/friends/{bob}", headers=auth_headers(alice))
    assert removed.json() == {"message": "Friend removed"}
    assert client.get("/api/friends", headers=auth_headers(bob)).json() == []


def test_friend_request_rejection(client: TestClient, make_user, auth_headers):
    alice, bob = make_user("alice"), make_user("bob")
    request_id = client.post(
        "/api/friends/request", json={"userId": bob}, headers=auth_headers(alice)
    ).json()["requestId"]

    rejected = client.post("/api/friends/reject", json={"requestId": request_id}, headers=auth_headers(bob))
    assert rejected.json() == {"message": "Friend request rejected"}
    assert client.get("/api/friends/requests", headers=auth_headers(bob)).json() == []

    self_request = client.post("/api/friends/request", json={"userId": alice}, headers=auth_headers(alice))
    assert self_request.status_code == 400
