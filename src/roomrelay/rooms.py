"""Room lifecycle: creation, join approval, reconnection and leaving.

Every operation follows the same shape: re-read the store, validate, write,
then notify. The store steps are small functions that run whole on the
store thread, so nothing another connection does can slip in between a
check and the write it guards.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field

from . import db
from .cleanup import CleanupReport, EphemeralCleanupCoordinator
from .config import ServerConfig
from .errors import (
    AlreadyMember,
    NotAMember,
    NotAuthorized,
    OwnerOffline,
    PersistenceFailure,
    RequestNotFound,
    RoomClassMismatch,
    RoomNotFound,
)
from .protocol import (
    JOIN_APPROVED,
    JOIN_DENIED,
    JOIN_REQUEST,
    MEMBER_JOINED,
    MEMBER_LEFT,
    MEMBERS_UPDATE,
    MY_ROOMS,
    ROOM_CLOSED,
    ROOM_CREATED,
    ROOM_DATA,
    member_snapshot,
    message_envelope,
    room_summary,
)
from .sessions import Session, SessionRegistry
from .store import AsyncStore

logger = logging.getLogger(__name__)


@dataclass
class JoinRequest:
    """A pending request to join a room, waiting on the owner."""

    request_id: str
    room_id: str
    room_code: str
    username: str
    public_key: str | None
    connection_id: str
    room_class: str
    created_at: float = field(default_factory=time.time)


def _class_mismatch_message(room_class: str) -> str:
    if room_class == db.ROOM_CLASS_AUTHENTICATED:
        return "This room requires an authenticated account"
    return "This room is for unauthenticated users only"


# --- Store steps ---


def _create_room(username: str, public_key: str | None, room_class: str, config: ServerConfig) -> dict:
    # A live legacy session can outlive its identity row after a cascade
    if room_class == db.ROOM_CLASS_LEGACY:
        db.ensure_identity(username, public_key)
    return db.create_room(
        username,
        room_class=room_class,
        code_length=config.room_code_length,
        max_attempts=config.room_code_attempts,
    )


def _check_join(room_code: str, username: str, room_class: str) -> dict:
    room = db.get_room_by_code(room_code)
    if room is None:
        raise RoomNotFound()
    if db.is_room_member(room["room_id"], username):
        raise AlreadyMember()
    if room["room_class"] != room_class:
        raise RoomClassMismatch(_class_mismatch_message(room["room_class"]))
    return room


def _check_approver(room_id: str, approver: str) -> dict:
    room = db.get_room(room_id)
    if room is None:
        raise RoomNotFound()
    if room["owner_username"] != approver:
        raise NotAuthorized("Only the room owner can resolve join requests")
    return room


def _approve(request: JoinRequest, approver: str) -> tuple[dict, dict]:
    room = _check_approver(request.room_id, approver)
    if db.is_room_member(room["room_id"], request.username):
        raise AlreadyMember()
    if request.room_class == db.ROOM_CLASS_LEGACY:
        db.ensure_identity(request.username, request.public_key)
    db.add_room_member(room["room_id"], request.username)
    return room, member_snapshot(db.list_room_members(room["room_id"]))


def _load_membership(room_id: str, username: str) -> dict:
    room = db.get_room(room_id)
    if room is None:
        raise RoomNotFound()
    if not db.is_room_member(room_id, username):
        raise NotAMember()
    return room


def _room_data(room_id: str, username: str, room_class: str, history_limit: int | None) -> dict:
    room = _load_membership(room_id, username)
    if room["room_class"] != room_class:
        raise RoomClassMismatch(_class_mismatch_message(room["room_class"]))
    members = db.list_room_members(room_id)
    messages = db.get_room_messages(room_id, limit=history_limit)
    return {
        **room_summary(room),
        **member_snapshot(members),
        "messages": [message_envelope(m) for m in messages],
    }


def _remove_member(room_id: str, username: str) -> dict:
    _load_membership(room_id, username)
    db.remove_room_member(room_id, username)
    return member_snapshot(db.list_room_members(room_id))


class RoomLifecycleManager:
    def __init__(
        self,
        store: AsyncStore,
        registry: SessionRegistry,
        cleanup: EphemeralCleanupCoordinator,
        config: ServerConfig | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.cleanup = cleanup
        self.config = config or ServerConfig()
        self._requests: dict[str, JoinRequest] = {}

    @property
    def pending_requests(self) -> dict[str, JoinRequest]:
        return dict(self._requests)

    async def create(self, connection_id: str) -> dict:
        """Create a room owned by the connection's identity and subscribe it."""
        session = self.registry.require(connection_id)
        try:
            room = await self.store.run(
                _create_room,
                session.username,
                session.public_key,
                session.room_class,
                self.config,
            )
        except RuntimeError as e:
            logger.error(f"Room creation for {session.username} failed: {e}")
            raise PersistenceFailure("Could not allocate a room code") from e

        self.registry.subscribe(connection_id, room["room_id"])
        logger.info(f"Room {room['room_id']} ({room['room_code']}) created by {session.username}")

        payload = {
            "roomId": room["room_id"],
            "roomCode": room["room_code"],
            "roomClass": room["room_class"],
            "owner": session.username,
            "members": [session.username],
            "memberKeys": {session.username: session.public_key} if session.public_key else {},
        }
        await self.registry.send(connection_id, ROOM_CREATED, payload)
        return payload

    async def request_join(self, connection_id: str, room_code: str) -> JoinRequest:
        """Route a join request to the room owner's live connection.

        Raises:
            RoomNotFound, AlreadyMember, RoomClassMismatch: from the store check.
            OwnerOffline: The owner has no live connection; the request is dropped.
        """
        session = self.registry.require(connection_id)
        room = await self.store.run(_check_join, room_code, session.username, session.room_class)

        owner_connection = self.registry.resolve_connection_for(room["owner_username"])
        if owner_connection is None:
            logger.info(f"Join request from {session.username} dropped, owner {room['owner_username']} offline")
            raise OwnerOffline()

        request = JoinRequest(
            request_id=f"req_{secrets.token_hex(8)}",
            room_id=room["room_id"],
            room_code=room["room_code"],
            username=session.username,
            public_key=session.public_key,
            connection_id=connection_id,
            room_class=session.room_class,
        )
        self._requests[request.request_id] = request

        delivered = await self.registry.send(
            owner_connection,
            JOIN_REQUEST,
            {
                "requestId": request.request_id,
                "roomId": request.room_id,
                "roomCode": request.room_code,
                "username": request.username,
                "publicKey": request.public_key,
            },
        )
        if not delivered:
            del self._requests[request.request_id]
            raise OwnerOffline()

        logger.info(f"Join request {request.request_id}: {session.username} -> room {room['room_id']}")
        return request

    def _take_request(self, request_id: str) -> JoinRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFound()
        return request

    def _requester_connection(self, request: JoinRequest) -> str | None:
        session = self.registry.get(request.connection_id)
        if session is not None and session.username == request.username:
            return request.connection_id
        return self.registry.resolve_connection_for(request.username)

    async def approve(self, connection_id: str, request_id: str) -> None:
        """Admit the requester, after re-checking that the room and its owner still hold."""
        approver = self.registry.require(connection_id)
        request = self._take_request(request_id)

        try:
            room, snapshot = await self.store.run(_approve, request, approver.username)
        except (RoomNotFound, AlreadyMember):
            self._requests.pop(request_id, None)
            raise
        self._requests.pop(request_id, None)

        room_id = room["room_id"]
        logger.info(f"{request.username} approved into room {room_id} by {approver.username}")

        target = self._requester_connection(request)
        if target is not None:
            self.registry.subscribe(target, room_id)
            await self.registry.send(
                target,
                JOIN_APPROVED,
                {**room_summary(room), **snapshot},
            )

        await self.registry.broadcast(
            room_id,
            MEMBER_JOINED,
            {"roomId": room_id, "username": request.username, "publicKey": request.public_key},
            exclude=target,
        )
        await self.registry.broadcast(room_id, MEMBERS_UPDATE, {"roomId": room_id, **snapshot})

    async def deny(self, connection_id: str, request_id: str) -> None:
        approver = self.registry.require(connection_id)
        request = self._take_request(request_id)

        try:
            await self.store.run(_check_approver, request.room_id, approver.username)
        except RoomNotFound:
            self._requests.pop(request_id, None)
            raise
        self._requests.pop(request_id, None)

        logger.info(f"Join request {request_id} from {request.username} denied")
        target = self._requester_connection(request)
        if target is not None:
            await self.registry.send(
                target,
                JOIN_DENIED,
                {"roomId": request.room_id, "roomCode": request.room_code, "reason": "Owner denied your request"},
            )

    async def reconnect_join(self, connection_id: str, room_id: str) -> dict:
        """Re-subscribe a returning member and send the room's state and history."""
        session = self.registry.require(connection_id)
        data = await self.store.run(
            _room_data,
            room_id,
            session.username,
            session.room_class,
            self.config.history_limit,
        )
        self.registry.subscribe(connection_id, room_id)
        await self.registry.send(connection_id, ROOM_DATA, data)
        return data

    async def leave(self, connection_id: str, room_id: str) -> None:
        """Leave a room. The owner leaving closes the room for everyone."""
        session = self.registry.require(connection_id)
        room = await self.store.run(_load_membership, room_id, session.username)

        if room["owner_username"] == session.username:
            await self._close(room, session)
            return

        snapshot = await self.store.run(_remove_member, room_id, session.username)
        self.registry.unsubscribe(connection_id, room_id)
        logger.info(f"{session.username} left room {room_id}")

        await self.registry.broadcast(room_id, MEMBER_LEFT, {"roomId": room_id, "username": session.username})
        await self.registry.broadcast(room_id, MEMBERS_UPDATE, {"roomId": room_id, **snapshot})

    async def _close(self, room: dict, owner: Session) -> CleanupReport:
        room_id = room["room_id"]
        report = await self.cleanup.cascade_on_owner_leave(room_id)

        await self.registry.broadcast(room_id, MEMBER_LEFT, {"roomId": room_id, "username": owner.username})
        await self.registry.broadcast(
            room_id,
            ROOM_CLOSED,
            {"roomId": room_id, "roomCode": room["room_code"], "reason": "Owner left the room"},
        )
        dropped = self.registry.unsubscribe_all(room_id)
        logger.info(f"Room {room_id} closed by {owner.username}, {len(dropped)} subscriptions dropped")
        return report

    async def list_rooms(self, connection_id: str) -> list[dict]:
        session = self.registry.require(connection_id)
        rooms = await self.store.run(db.list_rooms_for_identity, session.username)
        summaries = [room_summary(r) for r in rooms]
        await self.registry.send(connection_id, MY_ROOMS, {"rooms": summaries})
        return summaries
