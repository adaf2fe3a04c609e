"""Session registry: which live connection speaks for which identity.

The registry is a pair of tables keyed by connection id. It routes frames
and nothing else; membership, ownership and room class are always read from
the store. Nothing here is persisted except the identity's public key and
last-seen time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from . import db
from .errors import IdentityInUse, NotRegistered, PersistenceFailure
from .protocol import MEMBER_OFFLINE
from .store import AsyncStore
from .transport import Transport, make_frame

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Transient state for one live connection."""

    connection_id: str
    transport: Transport
    # Account name asserted by the auth collaborator, None for legacy connections
    principal: str | None = None
    username: str | None = None
    public_key: str | None = None
    rooms: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)

    @property
    def authenticated(self) -> bool:
        return self.principal is not None

    @property
    def registered(self) -> bool:
        return self.username is not None

    @property
    def room_class(self) -> str:
        return db.ROOM_CLASS_AUTHENTICATED if self.authenticated else db.ROOM_CLASS_LEGACY


def _bind_identity(username: str, public_key: str, authenticated: bool) -> dict:
    """Validate the identity against the store and record its public key."""
    existing = db.get_identity(username)
    if authenticated:
        if existing is None or not existing["is_authenticated"]:
            raise NotRegistered(f"No account exists for {username}")
    elif existing is not None and existing["is_authenticated"]:
        raise IdentityInUse(f"Username {username} belongs to a registered account")
    return db.upsert_identity(username, public_key)


class SessionRegistry:
    """Connection <-> identity bindings and connection <-> room subscriptions."""

    def __init__(self, store: AsyncStore) -> None:
        self.store = store
        self._sessions: dict[str, Session] = {}
        self._by_identity: dict[str, str] = {}
        # Usernames with a bind in flight, so two legacy connections can't
        # both pass the collision check while the store write is pending
        self._claims: dict[str, str] = {}

    # --- Connections ---

    def attach(self, connection_id: str, transport: Transport, principal: str | None = None) -> Session:
        """Track a newly opened connection. It is unregistered until bind()."""
        session = Session(connection_id=connection_id, transport=transport, principal=principal)
        self._sessions[connection_id] = session
        return session

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def require(self, connection_id: str) -> Session:
        """Return the connection's session, which must be registered."""
        session = self._sessions.get(connection_id)
        if session is None or not session.registered:
            raise NotRegistered()
        return session

    async def bind(self, connection_id: str, username: str, public_key: str) -> Session:
        """Bind a connection to an identity.

        Raises:
            IdentityInUse: A legacy identity is live on a different connection,
                or the name belongs to an authenticated account.
            NotRegistered: An authenticated principal has no account row.
        """
        session = self._sessions.get(connection_id)
        if session is None:
            raise NotRegistered("Connection is not open")

        if not session.authenticated:
            holder = self._by_identity.get(username) or self._claims.get(username)
            if holder is not None and holder != connection_id and holder in self._sessions:
                raise IdentityInUse()

        self._claims[username] = connection_id
        try:
            await self.store.run(_bind_identity, username, public_key, session.authenticated)
        finally:
            if self._claims.get(username) == connection_id:
                del self._claims[username]

        if session.username and session.username != username:
            await self._release_identity(session)

        previous = self._by_identity.get(username)
        if previous is not None and previous != connection_id:
            logger.info(f"Identity {username} moved from connection {previous} to {connection_id}")

        session.username = username
        session.public_key = public_key
        self._by_identity[username] = connection_id
        return session

    def _drop_index(self, username: str, connection_id: str) -> bool:
        if self._by_identity.get(username) == connection_id:
            del self._by_identity[username]
            return True
        return False

    async def _release_identity(self, session: Session) -> None:
        """Detach a connection from its identity and from every room it routed for.

        Rooms are told the member went offline only when this connection was
        the identity's current route.
        """
        rooms = sorted(session.rooms)
        session.rooms.clear()
        if not self._drop_index(session.username, session.connection_id):
            return
        for room_id in rooms:
            await self.broadcast(
                room_id,
                MEMBER_OFFLINE,
                {"username": session.username, "roomId": room_id},
            )

    async def unbind(self, connection_id: str) -> Session | None:
        """Forget a connection that has gone away.

        Persisted membership is untouched. Rooms the connection was
        subscribed to are told the member went offline, unless another
        connection has since taken over the identity.
        """
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return None

        if not session.username:
            return session

        await self._release_identity(session)

        try:
            await self.store.run(db.touch_last_seen, session.username)
        except PersistenceFailure:
            logger.warning(f"Could not record last-seen for {session.username}")

        return session

    def resolve_connection_for(self, username: str) -> str | None:
        return self._by_identity.get(username)

    def is_online(self, username: str) -> bool:
        return username in self._by_identity

    def online_count(self) -> int:
        return len(self._by_identity)

    def connection_count(self) -> int:
        return len(self._sessions)

    # --- Subscriptions ---

    def subscribe(self, connection_id: str, room_id: str) -> None:
        session = self._sessions.get(connection_id)
        if session is not None:
            session.rooms.add(room_id)

    def unsubscribe(self, connection_id: str, room_id: str) -> None:
        session = self._sessions.get(connection_id)
        if session is not None:
            session.rooms.discard(room_id)

    def unsubscribe_all(self, room_id: str) -> list[str]:
        """Drop every subscription to a room. Returns the affected connections."""
        dropped = self.subscribers(room_id)
        for connection_id in dropped:
            self._sessions[connection_id].rooms.discard(room_id)
        return dropped

    def subscribers(self, room_id: str) -> list[str]:
        return [cid for cid, s in self._sessions.items() if room_id in s.rooms]

    # --- Delivery ---

    async def send(self, connection_id: str, event: str, data: dict) -> bool:
        """Send one frame to one connection. Returns False if it didn't go out."""
        session = self._sessions.get(connection_id)
        if session is None:
            logger.debug(f"Dropping {event} for closed connection {connection_id}")
            return False
        try:
            await session.transport.send(make_frame(event, data))
        except Exception:
            logger.warning(f"Failed to send {event} to connection {connection_id}", exc_info=True)
            return False
        return True

    async def broadcast(
        self,
        room_id: str,
        event: str,
        data: dict,
        exclude: str | None = None,
    ) -> int:
        """Send a frame to every subscriber of a room. Returns the delivered count."""
        targets = [cid for cid in self.subscribers(room_id) if cid != exclude]
        if not targets:
            return 0
        results = await asyncio.gather(*(self.send(cid, event, data) for cid in targets))
        return sum(1 for ok in results if ok)
