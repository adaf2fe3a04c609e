"""Wire protocol for the /ws event surface.

Inbound payloads are validated with pydantic models; outbound payloads are
plain dicts built by the helpers at the bottom of this module. Field names
on the wire are camelCase.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# --- Event names ---

# Inbound
REGISTER = "register"
CREATE_ROOM = "create-room"
REQUEST_JOIN = "request-join"
APPROVE_JOIN = "approve-join"
DENY_JOIN = "deny-join"
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
SEND_MESSAGE = "send-message"
ACK_MESSAGE = "ack-message"
READ_MESSAGE = "read-message"
DELETE_MESSAGE_EVERYONE = "delete-message-everyone"
DELETE_MESSAGE_ME = "delete-message-me"
GET_MY_ROOMS = "get-my-rooms"
TYPING = "typing"

# Outbound
REGISTERED = "registered"
ROOM_CREATED = "room-created"
JOIN_REQUEST = "join-request"
JOIN_APPROVED = "join-approved"
JOIN_DENIED = "join-denied"
ROOM_DATA = "room-data"
NEW_MESSAGE = "new-message"
MESSAGE_STATE_CHANGED = "message-state-changed"
MESSAGE_DELETED = "message-deleted"
MEMBER_JOINED = "member-joined"
MEMBER_LEFT = "member-left"
MEMBER_OFFLINE = "member-offline"
MEMBERS_UPDATE = "members-update"
ROOM_CLOSED = "room-closed"
MY_ROOMS = "my-rooms"
USER_TYPING = "user-typing"
ERROR = "error"

SYSTEM_ACTOR = "system"

USERNAME_PATTERN = r"^[a-zA-Z0-9_]{3,20}$"
ROOM_CODE_PATTERN = r"^[A-Za-z0-9]{4,12}$"

MAX_PUBLIC_KEY_CHARS = 16_384
MAX_CIPHERTEXT_CHARS = 1_048_576
MAX_IV_CHARS = 256


# --- Inbound payloads ---


class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Frame(BaseModel):
    event: str
    data: dict = Field(default_factory=dict)


class RegisterPayload(Payload):
    # Optional for authenticated connections, where the principal names the account
    username: str | None = Field(default=None, pattern=USERNAME_PATTERN)
    public_key: str = Field(alias="publicKey", min_length=1, max_length=MAX_PUBLIC_KEY_CHARS)


class EmptyPayload(Payload):
    pass


class RequestJoinPayload(Payload):
    room_code: str = Field(alias="roomCode", pattern=ROOM_CODE_PATTERN)


class ResolveJoinPayload(Payload):
    request_id: str = Field(alias="requestId", min_length=1, max_length=64)


class RoomPayload(Payload):
    room_id: str = Field(alias="roomId", min_length=1, max_length=64)


class SendMessagePayload(RoomPayload):
    ciphertext: str = Field(min_length=1, max_length=MAX_CIPHERTEXT_CHARS)
    iv: str = Field(min_length=1, max_length=MAX_IV_CHARS)
    attachment_ref: str | None = Field(default=None, alias="attachmentRef", max_length=1024)


class MessageRefPayload(RoomPayload):
    message_id: str = Field(alias="messageId", min_length=1, max_length=64)


# --- Outbound payloads ---


def message_envelope(message: dict) -> dict:
    """Wire shape of a stored message."""
    return {
        "id": message["message_id"],
        "roomId": message["room_id"],
        "senderUsername": message["sender_username"],
        "ciphertext": message["ciphertext"],
        "iv": message["iv"],
        "attachmentRef": message.get("attachment_ref"),
        "state": message["state"],
        "timestamp": message["created_at"],
        "deliveredAt": message.get("delivered_at"),
        "readAt": message.get("read_at"),
    }


def member_snapshot(members: list[dict]) -> dict:
    """Member list and public keys, in join order."""
    return {
        "members": [m["username"] for m in members],
        "memberKeys": {m["username"]: m["public_key"] for m in members if m.get("public_key")},
    }


def room_summary(room: dict) -> dict:
    summary = {
        "roomId": room["room_id"],
        "roomCode": room["room_code"],
        "roomClass": room["room_class"],
        "owner": room["owner_username"],
        "createdAt": room["created_at"],
    }
    if "member_count" in room:
        summary["memberCount"] = room["member_count"]
    return summary


def error_payload(code: str, message: str, event: str | None) -> dict:
    return {"code": code, "message": message, "event": event}
