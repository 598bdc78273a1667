"""Tests for the chat hub: connect handshake and inbound event dispatch."""
import json

import pytest

from roomwire.errors import AuthenticationError, PersistenceError

from conftest import FakeTransport


def frame(event, data=None):
    return json.dumps({"event": event, "data": data})


class TestConnect:
    @pytest.mark.asyncio
    async def test_connected_lists_subscribed_rooms(self, hub, connect, users, room):
        connection, transport = await connect(users.bob)

        notice = transport.events("connected")[0]
        assert notice["connectionId"] == connection.connection_id
        assert notice["rooms"] == [room.id]
        assert notice["user"]["id"] == users.bob.id
        assert hub.registry.connections_for(room.id) == {connection.connection_id}

    @pytest.mark.asyncio
    async def test_bad_token_registers_nothing(self, hub):
        transport = FakeTransport()
        with pytest.raises(AuthenticationError):
            await hub.connect(transport, "not-a-jwt")
        assert len(hub.registry) == 0
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_blocked_user_cannot_authenticate(self, hub, store, tokens, users):
        store.set_blocked(users.bob.id, True)
        with pytest.raises(AuthenticationError):
            await hub.authenticate(tokens.create_access_token(users.bob.id))

    @pytest.mark.asyncio
    async def test_store_failure_during_setup_leaves_no_connection(self, hub, store, tokens, users):
        def broken_list_active_room_ids(user_id):
            raise PersistenceError("Storage operation failed")

        store.list_active_room_ids = broken_list_active_room_ids
        with pytest.raises(PersistenceError):
            await hub.connect(FakeTransport(), tokens.create_access_token(users.bob.id))
        assert not hub.registry.is_online(users.bob.id)

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, hub, connect, users):
        _, alice = await connect(users.alice)
        _, bob = await connect(users.bob)

        assert await hub.shutdown() == 2
        assert alice.closed_with == 1001
        assert bob.closed_with == 1001
        assert len(hub.registry) == 0


class TestHandle:
    @pytest.mark.asyncio
    async def test_malformed_frames_become_validation_errors(self, hub, connect, users):
        connection, transport = await connect(users.bob)
        transport.clear()

        await hub.handle(connection.connection_id, "{not json")
        await hub.handle(connection.connection_id, frame("dance", {}))
        await hub.handle(connection.connection_id, frame("send_message", {"content": "no room"}))

        errors = transport.events("error")
        assert [e["code"] for e in errors] == ["validation_error"] * 3
        assert "Unknown event" in errors[1]["message"]
        assert hub.registry.get(connection.connection_id) is not None

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_reported_generically(self, hub, connect, users, room):
        connection, transport = await connect(users.bob)
        transport.clear()

        async def explode(*args, **kwargs):
            raise RuntimeError("boom")

        hub.pipeline.send_message = explode
        await hub.handle(connection.connection_id, frame("send_message", {"roomId": room.id, "content": "hi"}))

        assert transport.events("error") == [{"message": "Internal server error", "code": "internal_error"}]
        assert hub.registry.get(connection.connection_id) is not None

    @pytest.mark.asyncio
    async def test_frames_for_unknown_connections_are_dropped(self, hub):
        await hub.handle("gone", frame("typing_start", {"roomId": "r"}))

    @pytest.mark.asyncio
    async def test_send_message_frame(self, hub, connect, users, room):
        _, alice = await connect(users.alice)
        connection, bob = await connect(users.bob)

        await hub.handle(connection.connection_id, frame("send_message", {
            "roomId": room.id,
            "content": "over the wire",
            "files": [{
                "filename": "a.png", "originalName": "A.png", "mimeType": "image/png",
                "size": 10, "url": "/f/a.png",
            }],
        }))

        for transport in (alice, bob):
            message = transport.events("new_message")[0]
            assert message["content"] == "over the wire"
            assert message["files"][0]["mimeType"] == "image/png"

    @pytest.mark.asyncio
    async def test_join_room_accepts_bare_room_id(self, hub, store, connect, users):
        connection, transport = await connect(users.carol)
        late = store.create_room(users.alice.id, [users.carol.id])
        transport.clear()

        await hub.handle(connection.connection_id, frame("join_room", late.id))

        assert transport.events("joined_room") == [{"roomId": late.id}]
        assert connection.connection_id in hub.registry.connections_for(late.id)

    @pytest.mark.asyncio
    async def test_non_member_join_gets_access_denied(self, hub, connect, users, room):
        connection, transport = await connect(users.carol)
        transport.clear()

        await hub.handle(connection.connection_id, frame("join_room", {"roomId": room.id}))

        assert transport.events("error")[0]["code"] == "access_denied"

    @pytest.mark.asyncio
    async def test_typing_goes_to_others_in_the_room(self, hub, connect, users, room):
        _, alice = await connect(users.alice)
        connection, bob = await connect(users.bob)
        alice.clear()
        bob.clear()

        await hub.handle(connection.connection_id, frame("typing_start", {"roomId": room.id}))
        await hub.handle(connection.connection_id, frame("typing_stop", {"roomId": room.id}))

        notices = alice.events("user_typing")
        assert [n["isTyping"] for n in notices] == [True, False]
        assert notices[0]["user"]["username"] == "bob"
        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_typing_for_unsubscribed_room_is_ignored(self, hub, connect, users, room):
        _, alice = await connect(users.alice)
        connection, carol = await connect(users.carol)
        alice.clear()
        carol.clear()

        await hub.handle(connection.connection_id, frame("typing_start", {"roomId": room.id}))

        assert alice.sent == []
        assert carol.sent == []

    @pytest.mark.asyncio
    async def test_reaction_and_read_frames(self, hub, connect, users, room):
        _, alice = await connect(users.alice)
        connection, _ = await connect(users.bob)
        message = await hub.pipeline.send_message(users.alice.id, room.id, "hello")
        alice.clear()

        await hub.handle(connection.connection_id, frame("add_reaction", {"messageId": message.id, "emoji": "🎉"}))
        await hub.handle(connection.connection_id, frame("mark_read", {"messageIds": [message.id]}))

        assert alice.names() == ["message_updated", "message_read"]
        assert alice.events("message_read")[0]["userId"] == users.bob.id

    @pytest.mark.asyncio
    async def test_update_status_frame(self, hub, store, connect, users):
        connection, transport = await connect(users.bob)
        transport.clear()

        await hub.handle(connection.connection_id, frame("update_status", {"status": "busy"}))
        await hub.handle(connection.connection_id, frame("update_status", {"status": "offline"}))

        assert store.get_user(users.bob.id).status.value == "busy"
        assert transport.names() == ["user_status_updated", "error"]
        assert transport.events("error")[0]["code"] == "validation_error"
