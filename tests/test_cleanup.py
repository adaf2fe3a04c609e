"""Tests for the owner-leave cascade."""

import sqlite3
from unittest.mock import patch

import pytest
from roomrelay import db
from roomrelay.cleanup import EphemeralCleanupCoordinator
from roomrelay.errors import CleanupFailed, RoomNotFound
from roomrelay.store import AsyncStore
from roomrelay.testing import connect_client


@pytest.fixture
def coordinator():
    store = AsyncStore()
    yield EphemeralCleanupCoordinator(store)
    store.close()


class TestCoordinator:
    @pytest.mark.asyncio
    async def test_report(self, coordinator):
        db.upsert_identity("alice", "pk")
        db.create_account("carol", "hash")
        room = db.create_room("alice")
        db.add_room_member(room["room_id"], "carol")
        db.store_message(room["room_id"], "carol", "ct", "iv")

        report = await coordinator.cascade_on_owner_leave(room["room_id"])

        assert report.to_dict() == {
            "roomId": room["room_id"],
            "deletedMessages": 1,
            "formerMembers": ["alice", "carol"],
            "reclaimedIdentities": ["alice"],
        }
        assert db.get_identity("carol") is not None

    @pytest.mark.asyncio
    async def test_missing_room(self, coordinator):
        with pytest.raises(RoomNotFound):
            await coordinator.cascade_on_owner_leave("missing")

    @pytest.mark.asyncio
    async def test_store_failure_is_cleanup_failed(self, coordinator):
        db.upsert_identity("alice", "pk")
        room = db.create_room("alice")

        with patch("roomrelay.db.delete_room_cascade", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(CleanupFailed):
                await coordinator.cascade_on_owner_leave(room["room_id"])

        assert db.get_room(room["room_id"]) is not None


class TestOwnerLeave:
    @pytest.mark.asyncio
    async def test_failed_cascade_leaves_room_open(self, relay_engine):
        alice = await connect_client(relay_engine, "alice")
        await alice.emit("create-room")
        room_id = alice.last("room-created")["roomId"]

        with patch("roomrelay.db.delete_room_cascade", side_effect=sqlite3.OperationalError("locked")):
            await alice.emit("leave-room", roomId=room_id)

        assert alice.last_error_code == "CleanupFailed"
        assert alice.last("room-closed") is None
        assert relay_engine.sessions.subscribers(room_id) == [alice.connection_id]
        assert db.is_room_member(room_id, "alice")

    @pytest.mark.asyncio
    async def test_authenticated_members_survive(self, relay_engine):
        db.create_account("carol", "hash")
        db.create_account("dave", "hash")
        carol = await connect_client(relay_engine, "carol", principal="carol")
        dave = await connect_client(relay_engine, "dave", principal="dave")
        await carol.emit("create-room")
        created = carol.last("room-created")
        await dave.emit("request-join", roomCode=created["roomCode"])
        await carol.emit("approve-join", requestId=carol.last("join-request")["requestId"])

        await carol.emit("leave-room", roomId=created["roomId"])

        assert dave.last("room-closed")["roomId"] == created["roomId"]
        assert db.get_identity("carol")["is_authenticated"] is True
        assert db.get_identity("dave")["is_authenticated"] is True
