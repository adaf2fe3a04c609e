"""Pytest fixtures and helpers for driving the relay engine without a network.

Usage in conftest.py:
    from roomrelay.testing import relay_engine  # noqa: F401

Or use the helpers directly:
    client = await connect_client(engine, "alice")
    await client.emit("create-room")
    room = client.last("room-created")

Available fixtures:
    - relay_engine: Fresh RelayEngine on the configured database
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generator

import pytest

from .config import ServerConfig
from .engine import RelayEngine
from .transport import InMemoryTransport

# Frames are recorded by the in-memory transport
RecordingTransport = InMemoryTransport


@dataclass
class EngineClient:
    """One simulated connection to an engine."""

    engine: RelayEngine
    connection_id: str
    transport: RecordingTransport
    username: str | None = None

    async def emit(self, event: str, **data) -> None:
        """Send an inbound event as this connection."""
        await self.engine.dispatch(self.connection_id, event, data)

    def events(self, event: str) -> list[dict]:
        return self.transport.events(event)

    def last(self, event: str) -> dict | None:
        return self.transport.last(event)

    @property
    def errors(self) -> list[dict]:
        return self.transport.events("error")

    @property
    def last_error_code(self) -> str | None:
        error = self.transport.last("error")
        return error["code"] if error else None

    async def disconnect(self) -> None:
        await self.engine.disconnect(self.connection_id)


def open_client(engine: RelayEngine, principal: str | None = None) -> EngineClient:
    """Open a connection without registering it."""
    transport = RecordingTransport()
    connection_id = engine.connect(transport, principal=principal)
    return EngineClient(engine=engine, connection_id=connection_id, transport=transport)


async def connect_client(
    engine: RelayEngine,
    username: str,
    public_key: str | None = None,
    principal: str | None = None,
) -> EngineClient:
    """Open a connection and register it as ``username``.

    Pass ``principal`` to simulate a connection the auth collaborator has
    already resolved to an account.
    """
    client = open_client(engine, principal=principal)
    await client.emit("register", username=username, publicKey=public_key or f"pk-{username}")
    if client.last("registered") is not None:
        client.username = username
    return client


@pytest.fixture
def relay_engine() -> Generator[RelayEngine, None, None]:
    """Fresh engine using the ROOMRELAY_DB database.

    The store worker is shut down after the test.

    Example:
        @pytest.mark.asyncio
        async def test_create(relay_engine):
            alice = await connect_client(relay_engine, "alice")
            await alice.emit("create-room")
            assert alice.last("room-created")["roomCode"]
    """
    engine = RelayEngine(ServerConfig())
    yield engine
    engine.close()
