"""Message relay and the per-message delivery state machine.

    pending -> delivered -> read

State only moves forward and the sender never moves its own message. Both
rules are enforced by the conditional UPDATE in db.advance_message_state,
so redundant acks are silent no-ops rather than errors.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from . import db
from .errors import MessageNotFound, NotAMember, NotAuthorized, RoomNotFound
from .protocol import (
    MESSAGE_DELETED,
    MESSAGE_STATE_CHANGED,
    NEW_MESSAGE,
    SYSTEM_ACTOR,
    USER_TYPING,
    message_envelope,
)
from .sessions import SessionRegistry
from .store import AsyncStore

logger = logging.getLogger(__name__)


# --- Store steps ---


def _require_member(room_id: str, username: str) -> dict:
    room = db.get_room(room_id)
    if room is None:
        raise RoomNotFound()
    if not db.is_room_member(room_id, username):
        raise NotAMember()
    return room


def _store(room_id: str, sender: str, ciphertext: str, iv: str, attachment_ref: str | None) -> tuple[dict, list[str]]:
    _require_member(room_id, sender)
    message = db.store_message(room_id, sender, ciphertext, iv, attachment_ref)
    members = [m["username"] for m in db.list_room_members(room_id)]
    return message, members


def _load_message(message_id: str, room_id: str, username: str) -> tuple[dict, dict]:
    room = _require_member(room_id, username)
    message = db.get_message(message_id)
    if message is None or message["room_id"] != room_id:
        raise MessageNotFound()
    return room, message


def _advance(message_id: str, room_id: str, username: str, target: str) -> dict | None:
    _, message = _load_message(message_id, room_id, username)
    if message["sender_username"] == username:
        return None
    return db.advance_message_state(message_id, target, by_username=username)


def _delete(message_id: str, room_id: str, username: str) -> dict:
    room, message = _load_message(message_id, room_id, username)
    if username not in (message["sender_username"], room["owner_username"]):
        raise NotAuthorized("Only the sender or the room owner can delete a message for everyone")
    db.delete_message(message_id)
    return message


def _state_change(message: dict, updated_by: str) -> dict:
    timestamp = message["read_at"] if message["state"] == db.READ else message["delivered_at"]
    return {
        "messageId": message["message_id"],
        "roomId": message["room_id"],
        "state": message["state"],
        "updatedBy": updated_by,
        "timestamp": timestamp,
    }


class MessageRelay:
    def __init__(self, store: AsyncStore, registry: SessionRegistry) -> None:
        self.store = store
        self.registry = registry

    async def send(
        self,
        connection_id: str,
        room_id: str,
        ciphertext: str,
        iv: str,
        attachment_ref: str | None = None,
    ) -> dict:
        """Persist a message, broadcast it, and mark it delivered if anyone else is online."""
        session = self.registry.require(connection_id)
        message, members = await self.store.run(_store, room_id, session.username, ciphertext, iv, attachment_ref)

        await self.registry.broadcast(room_id, NEW_MESSAGE, message_envelope(message))

        if any(self.registry.is_online(m) for m in members if m != session.username):
            updated = await self.store.run(db.advance_message_state, message["message_id"], db.DELIVERED)
            if updated is not None:
                message = updated
                await self.registry.broadcast(room_id, MESSAGE_STATE_CHANGED, _state_change(updated, SYSTEM_ACTOR))

        logger.debug(f"Message {message['message_id']} relayed in room {room_id} ({message['state']})")
        return message

    async def mark(self, connection_id: str, room_id: str, message_id: str, target: str) -> dict | None:
        """Advance a message to ``target`` on behalf of a member.

        Returns the updated message, or None when nothing changed.
        """
        session = self.registry.require(connection_id)
        updated = await self.store.run(_advance, message_id, room_id, session.username, target)
        if updated is None:
            return None

        await self.registry.broadcast(room_id, MESSAGE_STATE_CHANGED, _state_change(updated, session.username))
        return updated

    async def mark_delivered(self, connection_id: str, room_id: str, message_id: str) -> dict | None:
        return await self.mark(connection_id, room_id, message_id, db.DELIVERED)

    async def mark_read(self, connection_id: str, room_id: str, message_id: str) -> dict | None:
        return await self.mark(connection_id, room_id, message_id, db.READ)

    async def delete_for_everyone(self, connection_id: str, room_id: str, message_id: str) -> None:
        session = self.registry.require(connection_id)
        await self.store.run(_delete, message_id, room_id, session.username)
        logger.info(f"Message {message_id} in room {room_id} deleted by {session.username}")
        await self.registry.broadcast(
            room_id,
            MESSAGE_DELETED,
            {"messageId": message_id, "roomId": room_id, "scope": "everyone", "deletedBy": session.username},
        )

    async def delete_for_me(self, connection_id: str, room_id: str, message_id: str) -> None:
        """Acknowledge a local-only delete. Nothing is persisted."""
        session = self.registry.require(connection_id)
        await self.store.run(_load_message, message_id, room_id, session.username)
        await self.registry.send(
            connection_id,
            MESSAGE_DELETED,
            {"messageId": message_id, "roomId": room_id, "scope": "me", "deletedBy": session.username},
        )

    async def typing(self, connection_id: str, room_id: str) -> None:
        session = self.registry.require(connection_id)
        await self.store.run(_require_member, room_id, session.username)
        await self.registry.broadcast(
            room_id,
            USER_TYPING,
            {
                "roomId": room_id,
                "username": session.username,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            exclude=connection_id,
        )
