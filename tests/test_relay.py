"""Tests for message relay and delivery state."""

import pytest
from roomrelay import db
from roomrelay.testing import connect_client


async def _pair(engine):
    alice = await connect_client(engine, "alice")
    bob = await connect_client(engine, "bob")
    await alice.emit("create-room")
    created = alice.last("room-created")
    await bob.emit("request-join", roomCode=created["roomCode"])
    await alice.emit("approve-join", requestId=alice.last("join-request")["requestId"])
    return alice, bob, created["roomId"]


class TestScenario:
    @pytest.mark.asyncio
    async def test_alice_and_bob(self, relay_engine):
        alice = await connect_client(relay_engine, "alice", public_key="alice-key")
        bob = await connect_client(relay_engine, "bob", public_key="bob-key")

        await alice.emit("create-room")
        code = alice.last("room-created")["roomCode"]
        await bob.emit("request-join", roomCode=code)
        await alice.emit("approve-join", requestId=alice.last("join-request")["requestId"])

        keys = bob.last("join-approved")["memberKeys"]
        assert keys == {"alice": "alice-key", "bob": "bob-key"}

        room_id = bob.last("join-approved")["roomId"]
        await alice.emit("send-message", roomId=room_id, ciphertext="M1", iv="iv1")

        message = bob.last("new-message")
        assert message["ciphertext"] == "M1"
        assert message["senderUsername"] == "alice"
        assert message["state"] == "pending"
        delivered = alice.last("message-state-changed")
        assert delivered["state"] == "delivered"
        assert delivered["updatedBy"] == "system"

        await bob.emit("read-message", roomId=room_id, messageId=message["id"])

        change = alice.last("message-state-changed")
        assert change["messageId"] == message["id"]
        assert change["state"] == "read"
        assert change["updatedBy"] == "bob"
        assert change["timestamp"] is not None
        assert db.get_message(message["id"])["state"] == "read"


class TestSend:
    @pytest.mark.asyncio
    async def test_persisted_before_broadcast(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)

        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv", attachmentRef="file-1")

        message = bob.last("new-message")
        stored = db.get_message(message["id"])
        assert stored["ciphertext"] == "ct"
        assert stored["attachment_ref"] == "file-1"
        assert message["attachmentRef"] == "file-1"

    @pytest.mark.asyncio
    async def test_stays_pending_when_nobody_else_online(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await bob.disconnect()

        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")

        message = alice.last("new-message")
        assert message["state"] == "pending"
        assert alice.events("message-state-changed") == []
        assert db.get_message(message["id"])["state"] == "pending"

    @pytest.mark.asyncio
    async def test_delivered_when_member_online_but_not_subscribed(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await bob.disconnect()
        await connect_client(relay_engine, "bob")

        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")

        assert alice.last("message-state-changed")["state"] == "delivered"

    @pytest.mark.asyncio
    async def test_non_member_rejected(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        mallory = await connect_client(relay_engine, "mallory")

        await mallory.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")

        assert mallory.last_error_code == "NotAMember"
        assert db.count_room_messages(room_id) == 0
        assert bob.last("new-message") is None

    @pytest.mark.asyncio
    async def test_member_who_left_rejected(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await bob.emit("leave-room", roomId=room_id)

        await bob.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")

        assert bob.last_error_code == "NotAMember"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)

        await alice.emit("send-message", roomId=room_id, iv="iv")

        error = alice.transport.last("error")
        assert error["code"] == "InvalidPayload"
        assert error["event"] == "send-message"
        assert "ciphertext" in error["message"]


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_ack_then_read(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await bob.disconnect()
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]
        bob = await connect_client(relay_engine, "bob")
        await bob.emit("join-room", roomId=room_id)

        await bob.emit("ack-message", roomId=room_id, messageId=message_id)
        await bob.emit("read-message", roomId=room_id, messageId=message_id)

        states = [e["state"] for e in alice.events("message-state-changed")]
        assert states == ["delivered", "read"]

    @pytest.mark.asyncio
    async def test_redundant_ack_is_silent(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = bob.last("new-message")["id"]
        await bob.emit("read-message", roomId=room_id, messageId=message_id)
        before = len(alice.events("message-state-changed"))

        await bob.emit("ack-message", roomId=room_id, messageId=message_id)
        await bob.emit("read-message", roomId=room_id, messageId=message_id)

        assert len(alice.events("message-state-changed")) == before
        assert bob.errors == []
        assert db.get_message(message_id)["state"] == "read"

    @pytest.mark.asyncio
    async def test_sender_cannot_advance(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await bob.disconnect()
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]

        await alice.emit("read-message", roomId=room_id, messageId=message_id)

        assert db.get_message(message_id)["state"] == "pending"
        assert alice.events("message-state-changed") == []
        assert alice.errors == []

    @pytest.mark.asyncio
    async def test_message_must_belong_to_room(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]
        await bob.emit("create-room")
        other_room = bob.last("room-created")["roomId"]

        await bob.emit("read-message", roomId=other_room, messageId=message_id)

        assert bob.last_error_code == "MessageNotFound"

    @pytest.mark.asyncio
    async def test_non_member_cannot_ack(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]
        mallory = await connect_client(relay_engine, "mallory")

        await mallory.emit("read-message", roomId=room_id, messageId=message_id)

        assert mallory.last_error_code == "NotAMember"
        assert db.get_message(message_id)["state"] == "delivered"


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_for_everyone(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]

        await alice.emit("delete-message-everyone", roomId=room_id, messageId=message_id)

        deleted = bob.last("message-deleted")
        assert deleted == {"messageId": message_id, "roomId": room_id, "scope": "everyone", "deletedBy": "alice"}
        assert db.get_message(message_id) is None

    @pytest.mark.asyncio
    async def test_owner_can_delete_others_messages(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await bob.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = bob.last("new-message")["id"]

        await alice.emit("delete-message-everyone", roomId=room_id, messageId=message_id)

        assert db.get_message(message_id) is None

    @pytest.mark.asyncio
    async def test_member_cannot_delete_others_messages(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]

        await bob.emit("delete-message-everyone", roomId=room_id, messageId=message_id)

        assert bob.last_error_code == "NotAuthorized"
        assert db.get_message(message_id) is not None

    @pytest.mark.asyncio
    async def test_delete_for_me_is_local(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        await alice.emit("send-message", roomId=room_id, ciphertext="ct", iv="iv")
        message_id = alice.last("new-message")["id"]

        await bob.emit("delete-message-me", roomId=room_id, messageId=message_id)

        assert bob.last("message-deleted")["scope"] == "me"
        assert alice.last("message-deleted") is None
        assert db.get_message(message_id) is not None

    @pytest.mark.asyncio
    async def test_delete_missing_message(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)

        await alice.emit("delete-message-everyone", roomId=room_id, messageId="missing")

        assert alice.last_error_code == "MessageNotFound"


class TestTyping:
    @pytest.mark.asyncio
    async def test_typing_goes_to_peers_only(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)

        await alice.emit("typing", roomId=room_id)

        assert bob.last("user-typing")["username"] == "alice"
        assert alice.last("user-typing") is None

    @pytest.mark.asyncio
    async def test_typing_requires_membership(self, relay_engine):
        alice, bob, room_id = await _pair(relay_engine)
        mallory = await connect_client(relay_engine, "mallory")

        await mallory.emit("typing", roomId=room_id)

        assert mallory.last_error_code == "NotAMember"
        assert bob.last("user-typing") is None
