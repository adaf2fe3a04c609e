"""Protocol engine: routes inbound events to the managers.

The dispatcher here is the only place errors become ``error`` frames, and
those frames go only to the connection that sent the event.

Usage:
    engine = RelayEngine()
    connection_id = engine.connect(transport)
    await engine.dispatch(connection_id, "register", {"username": "alice", "publicKey": "..."})
    ...
    await engine.disconnect(connection_id)
    engine.close()
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from . import protocol
from .cleanup import EphemeralCleanupCoordinator
from .config import ServerConfig
from .errors import InternalError, InvalidPayload, NotAuthorized, RelayError
from .metrics import metrics
from .relay import MessageRelay
from .rooms import RoomLifecycleManager
from .sessions import SessionRegistry
from .store import AsyncStore
from .transport import Transport

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[Any]]


def _format_validation_error(e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        location = ".".join(str(part) for part in err["loc"]) or "data"
        problems.append(f"{location}: {err['msg']}")
    return "; ".join(problems)


class RelayEngine:
    """Wires the session registry, room lifecycle, relay and cleanup together."""

    def __init__(self, config: ServerConfig | None = None, store: AsyncStore | None = None) -> None:
        self.config = config or ServerConfig()
        self.store = store or AsyncStore()
        self.sessions = SessionRegistry(self.store)
        self.cleanup = EphemeralCleanupCoordinator(self.store)
        self.rooms = RoomLifecycleManager(self.store, self.sessions, self.cleanup, self.config)
        self.relay = MessageRelay(self.store, self.sessions)

        self._handlers: dict[str, tuple[type[BaseModel], Handler]] = {
            protocol.REGISTER: (protocol.RegisterPayload, self._on_register),
            protocol.CREATE_ROOM: (protocol.EmptyPayload, self._on_create_room),
            protocol.REQUEST_JOIN: (protocol.RequestJoinPayload, self._on_request_join),
            protocol.APPROVE_JOIN: (protocol.ResolveJoinPayload, self._on_approve_join),
            protocol.DENY_JOIN: (protocol.ResolveJoinPayload, self._on_deny_join),
            protocol.JOIN_ROOM: (protocol.RoomPayload, self._on_join_room),
            protocol.LEAVE_ROOM: (protocol.RoomPayload, self._on_leave_room),
            protocol.SEND_MESSAGE: (protocol.SendMessagePayload, self._on_send_message),
            protocol.ACK_MESSAGE: (protocol.MessageRefPayload, self._on_ack_message),
            protocol.READ_MESSAGE: (protocol.MessageRefPayload, self._on_read_message),
            protocol.DELETE_MESSAGE_EVERYONE: (protocol.MessageRefPayload, self._on_delete_everyone),
            protocol.DELETE_MESSAGE_ME: (protocol.MessageRefPayload, self._on_delete_me),
            protocol.GET_MY_ROOMS: (protocol.EmptyPayload, self._on_get_my_rooms),
            protocol.TYPING: (protocol.RoomPayload, self._on_typing),
        }

    # --- Connection lifecycle ---

    def connect(self, transport: Transport, principal: str | None = None) -> str:
        """Register a newly opened connection and return its id.

        ``principal`` is the account name resolved by the auth collaborator,
        or None for a legacy connection.
        """
        connection_id = uuid.uuid4().hex
        self.sessions.attach(connection_id, transport, principal=principal)
        metrics.record_connection(opened=True)
        logger.debug(f"Connection {connection_id} opened (principal={principal})")
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        session = await self.sessions.unbind(connection_id)
        metrics.record_connection(opened=False)
        if session is not None and session.username:
            logger.info(f"{session.username} disconnected ({connection_id})")

    def close(self) -> None:
        self.store.close()

    # --- Dispatch ---

    async def handle_text(self, connection_id: str, text: str) -> None:
        """Decode a raw text frame and dispatch it."""
        try:
            frame = protocol.Frame.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError):
            await self._send_error(connection_id, InvalidPayload("Malformed frame"), None)
            return
        await self.dispatch(connection_id, frame.event, frame.data)

    async def dispatch(self, connection_id: str, event: str, data: dict | None = None) -> None:
        """Handle one inbound event to completion."""
        entry = self._handlers.get(event)
        if entry is None:
            await self._send_error(connection_id, InvalidPayload(f"Unknown event {event!r}"), event)
            return

        model, handler = entry
        start = time.perf_counter()
        try:
            payload = model.model_validate(data or {})
            await handler(connection_id, payload)
        except ValidationError as e:
            await self._send_error(connection_id, InvalidPayload(_format_validation_error(e)), event)
        except RelayError as e:
            logger.debug(f"{event} from {connection_id} rejected: {e.code}: {e.message}")
            await self._send_error(connection_id, e, event)
        except Exception:
            logger.exception(f"Unhandled error in {event} handler")
            await self._send_error(connection_id, InternalError(), event)
        finally:
            metrics.record_event(event, (time.perf_counter() - start) * 1000)

    async def _send_error(self, connection_id: str, error: RelayError, event: str | None) -> None:
        metrics.record_error(error.code)
        await self.sessions.send(
            connection_id,
            protocol.ERROR,
            protocol.error_payload(error.code, error.message, event),
        )

    # --- Handlers ---

    async def _on_register(self, connection_id: str, payload: protocol.RegisterPayload) -> None:
        session = self.sessions.get(connection_id)
        if session is None:
            return

        if session.authenticated:
            if payload.username and payload.username != session.principal:
                raise NotAuthorized("Username does not match the authenticated account")
            username = session.principal
        elif payload.username:
            username = payload.username
        else:
            raise InvalidPayload("username: Field required")

        await self.sessions.bind(connection_id, username, payload.public_key)
        logger.info(f"{username} registered on {connection_id} ({session.room_class})")
        await self.sessions.send(
            connection_id,
            protocol.REGISTERED,
            {"username": username, "isAuthenticated": session.authenticated},
        )

    async def _on_create_room(self, connection_id: str, payload: protocol.EmptyPayload) -> None:
        await self.rooms.create(connection_id)

    async def _on_request_join(self, connection_id: str, payload: protocol.RequestJoinPayload) -> None:
        await self.rooms.request_join(connection_id, payload.room_code)

    async def _on_approve_join(self, connection_id: str, payload: protocol.ResolveJoinPayload) -> None:
        await self.rooms.approve(connection_id, payload.request_id)

    async def _on_deny_join(self, connection_id: str, payload: protocol.ResolveJoinPayload) -> None:
        await self.rooms.deny(connection_id, payload.request_id)

    async def _on_join_room(self, connection_id: str, payload: protocol.RoomPayload) -> None:
        await self.rooms.reconnect_join(connection_id, payload.room_id)

    async def _on_leave_room(self, connection_id: str, payload: protocol.RoomPayload) -> None:
        await self.rooms.leave(connection_id, payload.room_id)

    async def _on_get_my_rooms(self, connection_id: str, payload: protocol.EmptyPayload) -> None:
        await self.rooms.list_rooms(connection_id)

    async def _on_send_message(self, connection_id: str, payload: protocol.SendMessagePayload) -> None:
        await self.relay.send(
            connection_id,
            payload.room_id,
            payload.ciphertext,
            payload.iv,
            payload.attachment_ref,
        )

    async def _on_ack_message(self, connection_id: str, payload: protocol.MessageRefPayload) -> None:
        await self.relay.mark_delivered(connection_id, payload.room_id, payload.message_id)

    async def _on_read_message(self, connection_id: str, payload: protocol.MessageRefPayload) -> None:
        await self.relay.mark_read(connection_id, payload.room_id, payload.message_id)

    async def _on_delete_everyone(self, connection_id: str, payload: protocol.MessageRefPayload) -> None:
        await self.relay.delete_for_everyone(connection_id, payload.room_id, payload.message_id)

    async def _on_delete_me(self, connection_id: str, payload: protocol.MessageRefPayload) -> None:
        await self.relay.delete_for_me(connection_id, payload.room_id, payload.message_id)

    async def _on_typing(self, connection_id: str, payload: protocol.RoomPayload) -> None:
        await self.relay.typing(connection_id, payload.room_id)


# --- Global singleton ---

_engine: RelayEngine | None = None


def get_engine() -> RelayEngine:
    """Get the global engine instance, creating it from the saved config on first call."""
    global _engine
    if _engine is None:
        _engine = RelayEngine(ServerConfig.load())
    return _engine


def set_engine(engine: RelayEngine) -> None:
    """Replace the global engine instance."""
    global _engine
    _engine = engine


def reset_engine() -> None:
    """Close and forget the global engine (for testing and shutdown)."""
    global _engine
    if _engine is not None:
        _engine.close()
    _engine = None
