"""Outbound transports for engine frames.

Architecture:
    - Transport ABC defines the one thing the engine needs from a
      connection: deliver a frame
    - InMemoryTransport records frames and lets coroutines wait for them,
      for tests and embedding without a network
    - The WebSocket transport lives next to the FastAPI app in api.py

Frame format (both directions):
    {"event": "<name>", "data": {...}}
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


def make_frame(event: str, data: dict | None = None) -> dict:
    """Build a wire frame."""
    return {"event": event, "data": data or {}}


class Transport(ABC):
    """A live connection the engine can push frames to."""

    @abstractmethod
    async def send(self, frame: dict) -> None:
        """Deliver one frame to the peer.

        Raises whatever the underlying connection raises; the session
        registry logs and absorbs send failures.
        """

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the connection. Optional for transports without a peer."""


class InMemoryTransport(Transport):
    """Transport that keeps every frame it is sent.

    Uses an asyncio.Condition so callers can wait for a frame to arrive
    instead of polling.
    """

    def __init__(self) -> None:
        self.frames: list[dict] = []
        self.closed: tuple[int, str] | None = None
        self._condition: asyncio.Condition | None = None

    def _get_condition(self) -> asyncio.Condition:
        # Created lazily so the transport can be built outside a running loop
        if self._condition is None:
            self._condition = asyncio.Condition()
        return self._condition

    async def send(self, frame: dict) -> None:
        if self.closed is not None:
            raise ConnectionError("Transport is closed")
        condition = self._get_condition()
        async with condition:
            self.frames.append(frame)
            condition.notify_all()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def events(self, event: str) -> list[dict]:
        """Payloads of every frame received for ``event``, oldest first."""
        return [f["data"] for f in self.frames if f["event"] == event]

    def last(self, event: str) -> dict | None:
        """Payload of the most recent ``event`` frame, or None."""
        matches = self.events(event)
        return matches[-1] if matches else None

    def names(self) -> list[str]:
        return [f["event"] for f in self.frames]

    def clear(self) -> None:
        self.frames.clear()

    async def wait_for(self, event: str, timeout: float = 1.0) -> dict:
        """Wait until a frame for ``event`` has arrived and return its payload.

        Raises:
            asyncio.TimeoutError: If no such frame arrives within ``timeout``.
        """
        condition = self._get_condition()
        async with condition:
            await asyncio.wait_for(
                condition.wait_for(lambda: self.last(event) is not None),
                timeout=timeout,
            )
        return self.last(event)  # type: ignore[return-value]
