"""Error taxonomy for the room protocol engine.

Every failure a client can observe is a RelayError subclass. The engine's
dispatcher is the only place these are turned into ``error`` frames, and the
frame only ever goes to the connection that triggered the operation.
"""


class RelayError(Exception):
    """Base class for protocol errors reported back to a single connection."""

    code = "RelayError"
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotRegistered(RelayError):
    code = "NotRegistered"
    default_message = "Not registered"


class IdentityInUse(RelayError):
    code = "IdentityInUse"
    default_message = "Username is already in use"


class RoomNotFound(RelayError):
    code = "RoomNotFound"
    default_message = "Room not found"


class AlreadyMember(RelayError):
    code = "AlreadyMember"
    default_message = "Already in room"


class NotAMember(RelayError):
    code = "NotAMember"
    default_message = "Not a member of this room"


class RoomClassMismatch(RelayError):
    code = "RoomClassMismatch"
    default_message = "Room type access denied"


class OwnerOffline(RelayError):
    code = "OwnerOffline"
    default_message = "Room owner is not online"


class NotAuthorized(RelayError):
    code = "NotAuthorized"
    default_message = "Not authorized"


class MessageNotFound(RelayError):
    code = "MessageNotFound"
    default_message = "Message not found"


class RequestNotFound(RelayError):
    code = "RequestNotFound"
    default_message = "Join request not found or already resolved"


class InvalidPayload(RelayError):
    code = "InvalidPayload"
    default_message = "Invalid payload"


class CleanupFailed(RelayError):
    code = "CleanupFailed"
    default_message = "Room cleanup failed"


class PersistenceFailure(RelayError):
    code = "PersistenceFailure"
    default_message = "Storage is unavailable"


class InternalError(RelayError):
    code = "InternalError"
    default_message = "Internal server error"
