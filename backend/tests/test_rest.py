"""Tests for the REST routers: rooms, members, pins, messages, users, health."""
import pytest

from roomwire.store import AttachmentCreate, MessageType


@pytest.fixture
def hub_of(api_client):
    return api_client.app.state.hub


def seed_message(store, room, user, content="hello"):
    return store.create_message(room.id, user.id, content)


class TestRooms:
    def test_create_room(self, api_client, auth_headers, users):
        response = api_client.post(
            "/rooms",
            json={"name": "ops", "memberIds": [users.bob.id]},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "ops"
        assert body["createdBy"] == users.alice.id
        roles = {m["userId"]: m["role"] for m in body["members"]}
        assert roles == {users.alice.id: "owner", users.bob.id: "member"}

    def test_create_room_validation(self, api_client, auth_headers, users):
        empty = api_client.post("/rooms", json={"memberIds": []}, headers=auth_headers(users.alice))
        unknown = api_client.post("/rooms", json={"memberIds": ["ghost"]}, headers=auth_headers(users.alice))

        assert empty.status_code == 422
        assert empty.json()["code"] == "validation_error"
        assert unknown.status_code == 404
        assert unknown.json()["code"] == "not_found"

    def test_list_and_get_rooms(self, api_client, auth_headers, users, room):
        listed = api_client.get("/rooms", headers=auth_headers(users.bob)).json()
        assert [r["id"] for r in listed] == [room.id]

        detail = api_client.get(f"/rooms/{room.id}", headers=auth_headers(users.bob))
        assert detail.status_code == 200
        assert len(detail.json()["members"]) == 2

        denied = api_client.get(f"/rooms/{room.id}", headers=auth_headers(users.carol))
        assert denied.status_code == 403
        assert denied.json() == {"error": "Not a member of this room", "code": "access_denied"}

    def test_missing_room_is_404(self, api_client, auth_headers, users):
        response = api_client.get("/rooms/nope", headers=auth_headers(users.alice))
        assert response.status_code == 404

    def test_owner_updates_room(self, api_client, auth_headers, users, room):
        response = api_client.patch(
            f"/rooms/{room.id}",
            json={"name": "lobby", "avatar": "https://cdn.example.com/lobby.png"},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "lobby"
        assert body["avatar"] == "https://cdn.example.com/lobby.png"
        assert body["description"] is None
        assert {m["userId"] for m in body["members"]} == {users.alice.id, users.bob.id}
        detail = api_client.get(f"/rooms/{room.id}", headers=auth_headers(users.bob)).json()
        assert detail["name"] == "lobby"

    def test_update_room_requires_owner_or_admin(self, api_client, auth_headers, users, room):
        member = api_client.patch(f"/rooms/{room.id}", json={"name": "mine"}, headers=auth_headers(users.bob))
        outsider = api_client.patch(f"/rooms/{room.id}", json={"name": "mine"}, headers=auth_headers(users.carol))

        assert member.status_code == 403
        assert member.json() == {"error": "Insufficient permissions", "code": "access_denied"}
        assert outsider.status_code == 403

        api_client.patch(
            f"/rooms/{room.id}/members/{users.bob.id}", json={"role": "admin"}, headers=auth_headers(users.alice)
        )
        admin = api_client.patch(f"/rooms/{room.id}", json={"description": "ops"}, headers=auth_headers(users.bob))
        assert admin.status_code == 200
        assert admin.json()["description"] == "ops"

    def test_update_room_validation(self, api_client, auth_headers, users, room):
        response = api_client.patch(f"/rooms/{room.id}", json={"name": ""}, headers=auth_headers(users.alice))

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"


class TestMembers:
    def test_add_change_and_remove(self, api_client, auth_headers, users, room):
        owner = auth_headers(users.alice)

        added = api_client.post(f"/rooms/{room.id}/members", json={"userId": users.carol.id}, headers=owner)
        assert added.status_code == 201
        assert added.json()["role"] == "member"

        promoted = api_client.patch(
            f"/rooms/{room.id}/members/{users.carol.id}", json={"role": "moderator"}, headers=owner
        )
        assert promoted.json()["role"] == "moderator"

        removed = api_client.delete(f"/rooms/{room.id}/members/{users.carol.id}", headers=owner)
        assert removed.json() == {"removed": True}

        again = api_client.delete(f"/rooms/{room.id}/members/{users.carol.id}", headers=owner)
        assert again.json() == {"removed": False}

    def test_member_cannot_add(self, api_client, auth_headers, users, room):
        response = api_client.post(
            f"/rooms/{room.id}/members", json={"userId": users.carol.id}, headers=auth_headers(users.bob)
        )
        assert response.status_code == 403

    def test_removed_member_loses_access_immediately(self, api_client, auth_headers, users, room):
        assert api_client.get(f"/rooms/{room.id}", headers=auth_headers(users.bob)).status_code == 200

        api_client.delete(f"/rooms/{room.id}/members/{users.bob.id}", headers=auth_headers(users.alice))

        assert api_client.get(f"/rooms/{room.id}", headers=auth_headers(users.bob)).status_code == 403


class TestPinsAndFiles:
    def test_pin_lifecycle(self, api_client, store, auth_headers, users, room):
        message = seed_message(store, room, users.bob, "pin me")
        owner = auth_headers(users.alice)

        assert api_client.post(
            f"/rooms/{room.id}/pin/{message.id}", headers=auth_headers(users.bob)
        ).status_code == 403

        pinned = api_client.post(f"/rooms/{room.id}/pin/{message.id}", headers=owner)
        assert pinned.status_code == 201
        assert pinned.json()["message"]["content"] == "pin me"

        listed = api_client.get(f"/rooms/{room.id}/pinned", headers=auth_headers(users.bob)).json()
        assert [p["messageId"] for p in listed] == [message.id]
        detail = api_client.get(f"/rooms/{room.id}", headers=owner).json()
        assert [p["messageId"] for p in detail["pinnedMessages"]] == [message.id]

        assert api_client.delete(f"/rooms/{room.id}/pin/{message.id}", headers=owner).status_code == 204
        assert api_client.delete(f"/rooms/{room.id}/pin/{message.id}", headers=owner).status_code == 404

    def test_file_history(self, api_client, store, auth_headers, users, room):
        item = AttachmentCreate(filename="a.txt", original_name="A.txt", mime_type="text/plain", size=1, url="/f/a")
        store.create_message(room.id, users.bob.id, None, type_=MessageType.FILE, attachments=[item])

        page = api_client.get(f"/rooms/{room.id}/files", headers=auth_headers(users.alice)).json()

        assert [f["originalName"] for f in page["files"]] == ["A.txt"]
        assert page["files"][0]["userId"] == users.bob.id
        assert page["nextCursor"] is None


class TestMessages:
    def test_history_pagination(self, api_client, store, auth_headers, users, room):
        for i in range(3):
            seed_message(store, room, users.alice, f"m{i}")
        headers = auth_headers(users.bob)

        first = api_client.get(f"/messages/room/{room.id}?limit=2", headers=headers).json()
        assert [m["content"] for m in first["messages"]] == ["m1", "m2"]

        second = api_client.get(
            f"/messages/room/{room.id}?limit=2&cursor={first['nextCursor']}", headers=headers
        ).json()
        assert [m["content"] for m in second["messages"]] == ["m0"]
        assert second["nextCursor"] is None

    def test_history_rejects_bad_limit(self, api_client, auth_headers, users, room):
        response = api_client.get(f"/messages/room/{room.id}?limit=0", headers=auth_headers(users.bob))
        assert response.status_code == 422

    def test_edit_and_delete(self, api_client, store, auth_headers, users, room):
        message = seed_message(store, room, users.bob, "typo")

        forbidden = api_client.patch(
            f"/messages/{message.id}", json={"content": "nope"}, headers=auth_headers(users.alice)
        )
        assert forbidden.status_code == 403

        edited = api_client.patch(
            f"/messages/{message.id}", json={"content": "fixed"}, headers=auth_headers(users.bob)
        ).json()
        assert edited["content"] == "fixed"
        assert edited["isEdited"] is True

        deleted = api_client.delete(f"/messages/{message.id}", headers=auth_headers(users.alice)).json()
        assert deleted["isDeleted"] is True
        assert deleted["content"] is None

        history = api_client.get(f"/messages/room/{room.id}", headers=auth_headers(users.bob)).json()
        assert history["messages"] == []

    def test_get_and_search(self, api_client, store, auth_headers, users, room):
        message = seed_message(store, room, users.alice, "Release notes")
        seed_message(store, room, users.alice, "coffee")

        fetched = api_client.get(f"/messages/{message.id}", headers=auth_headers(users.bob)).json()
        assert fetched["sender"]["username"] == "alice"

        found = api_client.get(f"/messages/search/{room.id}?q=release", headers=auth_headers(users.bob)).json()
        assert [m["id"] for m in found] == [message.id]

        assert api_client.get(f"/messages/{message.id}", headers=auth_headers(users.carol)).status_code == 403

    def test_mark_read(self, api_client, store, auth_headers, users, room):
        message = seed_message(store, room, users.alice)

        response = api_client.post(
            "/messages/mark-read", json={"messageIds": [message.id]}, headers=auth_headers(users.bob)
        )

        receipts = response.json()["receipts"]
        assert receipts[0]["messageId"] == message.id
        assert receipts[0]["userId"] == users.bob.id
        assert store.get_read_receipt(message.id, users.bob.id) is not None


class TestUsers:
    def test_me(self, api_client, auth_headers, users):
        me = api_client.get("/users/me", headers=auth_headers(users.alice)).json()

        assert me["id"] == users.alice.id
        assert me["email"] == "alice@example.com"
        assert me["displayName"] == "Alice"

    def test_search_excludes_caller_and_blocked(self, api_client, store, auth_headers, users):
        store.set_blocked(users.carol.id, True)

        found = api_client.get("/users/search?q=a", headers=auth_headers(users.alice)).json()

        assert [u["username"] for u in found] == []
        found = api_client.get("/users/search?q=BO", headers=auth_headers(users.alice)).json()
        assert [u["username"] for u in found] == ["bob"]

    def test_update_me(self, api_client, auth_headers, users):
        response = api_client.patch(
            "/users/me", json={"displayName": "Ally", "bio": "hi"}, headers=auth_headers(users.alice)
        )

        assert response.status_code == 200
        assert response.json()["displayName"] == "Ally"
        assert response.json()["bio"] == "hi"
        me = api_client.get("/users/me", headers=auth_headers(users.alice)).json()
        assert me["displayName"] == "Ally"
        assert me["email"] == "alice@example.com"

        too_long = api_client.patch("/users/me", json={"displayName": "x" * 51}, headers=auth_headers(users.alice))
        assert too_long.status_code == 422

    def test_public_profile(self, api_client, store, auth_headers, users):
        store.update_profile(users.bob.id, bio="on call")

        response = api_client.get(f"/users/{users.bob.id}", headers=auth_headers(users.alice))

        assert response.status_code == 200
        body = response.json()
        assert body["username"] == "bob"
        assert body["bio"] == "on call"
        assert body["status"] == "offline"
        assert body["isOnline"] is False
        assert "lastSeen" in body
        assert "email" not in body

        missing = api_client.get("/users/ghost", headers=auth_headers(users.alice))
        assert missing.status_code == 404
        assert missing.json()["code"] == "not_found"

    def test_presence(self, api_client, auth_headers, users):
        state = api_client.get(f"/users/{users.bob.id}/presence", headers=auth_headers(users.alice)).json()
        assert state["status"] == "offline"
        assert state["isOnline"] is False

        missing = api_client.get("/users/ghost/presence", headers=auth_headers(users.alice))
        assert missing.status_code == 404


class TestHealth:
    def test_ok(self, api_client, hub_of):
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "OK"
        assert response.json()["connections"] == len(hub_of.registry)

    def test_degraded_when_store_is_down(self, api_client, store):
        store.close()

        response = api_client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "DEGRADED"
        assert response.json()["store"] == "down"
