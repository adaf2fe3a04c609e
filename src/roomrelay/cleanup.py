"""Ephemeral cleanup: tearing a room down when its owner leaves."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from . import db
from .errors import CleanupFailed, PersistenceFailure, RoomNotFound
from .store import AsyncStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """What an owner-leave cascade removed."""

    room_id: str
    deleted_messages: int = 0
    former_members: list[str] = field(default_factory=list)
    reclaimed_identities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "roomId": self.room_id,
            "deletedMessages": self.deleted_messages,
            "formerMembers": list(self.former_members),
            "reclaimedIdentities": list(self.reclaimed_identities),
        }


class EphemeralCleanupCoordinator:
    def __init__(self, store: AsyncStore) -> None:
        self.store = store

    async def cascade_on_owner_leave(self, room_id: str) -> CleanupReport:
        """Delete the room's messages, memberships and row, then its orphaned legacy identities.

        The cascade is one store transaction: callers see either all of it or
        CleanupFailed with nothing changed.

        Raises:
            RoomNotFound: If the room was already gone.
            CleanupFailed: If the store rejected the cascade.
        """
        try:
            result = await self.store.run(db.delete_room_cascade, room_id)
        except ValueError as e:
            raise RoomNotFound() from e
        except PersistenceFailure as e:
            logger.error(f"Cascade for room {room_id} rolled back")
            raise CleanupFailed() from e

        report = CleanupReport(
            room_id=result["room_id"],
            deleted_messages=result["deleted_messages"],
            former_members=result["former_members"],
            reclaimed_identities=result["reclaimed_identities"],
        )
        logger.info(
            f"Room {room_id} cleaned up: {report.deleted_messages} messages, "
            f"{len(report.former_members)} members, "
            f"reclaimed identities {report.reclaimed_identities}"
        )
        return report
