"""Tests for event dispatch and error frames."""

import json
from unittest.mock import patch

import pytest

from roomrelay.engine import RelayEngine, get_engine, reset_engine, set_engine
from roomrelay.metrics import metrics
from roomrelay.testing import connect_client, open_client


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_event(self, relay_engine):
        client = open_client(relay_engine)

        await client.emit("shout", text="hi")

        error = client.transport.last("error")
        assert error["code"] == "InvalidPayload"
        assert error["event"] == "shout"

    @pytest.mark.asyncio
    async def test_errors_go_only_to_sender(self, relay_engine):
        alice = await connect_client(relay_engine, "alice")
        bob = await connect_client(relay_engine, "bob")

        await bob.emit("join-room", roomId="missing")

        assert bob.last_error_code == "RoomNotFound"
        assert alice.errors == []

    @pytest.mark.asyncio
    async def test_unregistered_connection(self, relay_engine):
        client = open_client(relay_engine)

        await client.emit("create-room")

        assert client.last_error_code == "NotRegistered"
        assert client.last("room-created") is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal_error(self, relay_engine):
        alice = await connect_client(relay_engine, "alice")

        with patch.object(relay_engine.rooms, "list_rooms", side_effect=KeyError("boom")):
            await alice.emit("get-my-rooms")

        error = alice.transport.last("error")
        assert error["code"] == "InternalError"
        assert "boom" not in error["message"]

    @pytest.mark.asyncio
    async def test_error_and_event_metrics(self, relay_engine):
        client = open_client(relay_engine)

        await client.emit("create-room")

        data = metrics.to_dict()
        assert data["errors"]["NotRegistered"] == 1
        assert data["events"]["create-room"]["count"] == 1


class TestHandleText:
    @pytest.mark.asyncio
    async def test_malformed_json(self, relay_engine):
        client = open_client(relay_engine)

        await relay_engine.handle_text(client.connection_id, "{not json")

        error = client.transport.last("error")
        assert error == {"code": "InvalidPayload", "message": "Malformed frame", "event": None}

    @pytest.mark.asyncio
    async def test_frame_without_event(self, relay_engine):
        client = open_client(relay_engine)

        await relay_engine.handle_text(client.connection_id, json.dumps({"data": {}}))

        assert client.last_error_code == "InvalidPayload"

    @pytest.mark.asyncio
    async def test_valid_frame(self, relay_engine):
        client = open_client(relay_engine)

        await relay_engine.handle_text(
            client.connection_id,
            json.dumps({"event": "register", "data": {"username": "alice", "publicKey": "pk"}}),
        )

        assert client.last("registered") == {"username": "alice", "isAuthenticated": False}


class TestRegister:
    @pytest.mark.asyncio
    async def test_legacy_requires_username(self, relay_engine):
        client = open_client(relay_engine)

        await client.emit("register", publicKey="pk")

        assert client.last_error_code == "InvalidPayload"

    @pytest.mark.asyncio
    async def test_authenticated_without_account(self, relay_engine):
        client = open_client(relay_engine, principal="ghost")

        await client.emit("register", publicKey="pk")

        assert client.last_error_code == "NotRegistered"


class TestGlobalEngine:
    def test_get_engine_is_cached(self):
        engine = get_engine()
        assert get_engine() is engine

    def test_set_engine(self):
        engine = RelayEngine()
        set_engine(engine)
        assert get_engine() is engine
        reset_engine()
        assert get_engine() is not engine
