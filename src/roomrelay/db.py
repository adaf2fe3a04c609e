"""Persistence gateway for roomrelay - SQLite-backed identities, rooms and messages.

The store is the source of truth for membership, ownership, room class and
message state. Everything in memory (sessions, subscriptions, pending join
requests) only routes.

Connection Management:
    # Global thread-local connection, configured by ROOMRELAY_DB
    init_db()
    room = create_room("alice")

    # Scoped connection
    with scoped_connection("/path/to/relay.db") as conn:
        init_db_with_conn(conn)
        room = create_room("alice", conn=conn)

    # In-memory for testing
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...
"""

from __future__ import annotations

import os
import secrets
import sqlite3
import string
import threading
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 1

# Message delivery states, in order. State only ever moves to the right.
PENDING = "pending"
DELIVERED = "delivered"
READ = "read"
MESSAGE_STATES = (PENDING, DELIVERED, READ)

ROOM_CLASS_LEGACY = "legacy"
ROOM_CLASS_AUTHENTICATED = "authenticated"
ROOM_CLASSES = (ROOM_CLASS_LEGACY, ROOM_CLASS_AUTHENTICATED)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_ROOM_CODE_LENGTH = 6
DEFAULT_ROOM_CODE_ATTEMPTS = 16

# Thread-local storage for per-thread connections.
# The engine runs every store call on one worker thread, but the CLI and
# tests call in from their own threads.
_local = threading.local()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Connection Management ---


def _configure(conn: sqlite3.Connection, wal: bool) -> sqlite3.Connection:
    if wal:
        # Enable WAL mode for better concurrent read/write performance
        conn.execute("PRAGMA journal_mode=WAL")
    # Wait for locks instead of failing immediately
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Args:
        db_path: Optional explicit database path. If given, a new connection
                 is returned that the caller owns. If None, the current
                 thread's connection is returned, created from the
                 ROOMRELAY_DB environment variable (default ":memory:").

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
            return _configure(conn, wal=False)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        return _configure(conn, wal=True)

    if getattr(_local, "conn", None) is None:
        db_path_env = os.environ.get("ROOMRELAY_DB", ":memory:")

        if db_path_env == ":memory:":
            # Shared cache so every thread sees the same in-memory database.
            # The name includes the process ID so parallel test processes
            # don't interfere with each other.
            conn = sqlite3.connect(
                f"file:memdb_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
            _local.conn = _configure(conn, wal=False)
        else:
            conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn = _configure(conn, wal=True)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed when the context exits.

    Example:
        with scoped_connection("/var/lib/roomrelay/relay.db") as conn:
            init_db_with_conn(conn)
            list_rooms(conn=conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db():
    """Close the calling thread's connection."""
    close_thread_connection()


def close_thread_connection():
    """Close the connection for the current thread only.

    The engine calls this on its store worker thread during shutdown.
    """
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to global."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list[sqlite3.Row]) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


# --- Migration Functions ---


def _migrate_001_add_message_state_index(conn: sqlite3.Connection) -> None:
    """Migration 001: Index messages by room and state for delivery updates."""
    conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_room_state ON messages(room_id, state)")
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add room/state index to messages", _migrate_001_add_message_state_index),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except sqlite3.Error as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS identities (
        username TEXT PRIMARY KEY,
        password_hash TEXT,
        public_key TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        last_seen TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS rooms (
        room_id TEXT PRIMARY KEY,
        room_code TEXT NOT NULL UNIQUE,
        owner_username TEXT NOT NULL REFERENCES identities(username),
        room_class TEXT NOT NULL CHECK (room_class IN ('legacy', 'authenticated')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS room_members (
        room_id TEXT NOT NULL REFERENCES rooms(room_id) ON DELETE CASCADE,
        username TEXT NOT NULL REFERENCES identities(username) ON DELETE CASCADE,
        joined_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (room_id, username)
    );

    CREATE INDEX IF NOT EXISTS idx_room_members_username ON room_members(username);

    CREATE TABLE IF NOT EXISTS messages (
        message_id TEXT PRIMARY KEY,
        room_id TEXT NOT NULL REFERENCES rooms(room_id) ON DELETE CASCADE,
        sender_username TEXT NOT NULL,
        ciphertext TEXT NOT NULL,
        iv TEXT NOT NULL,
        attachment_ref TEXT,
        state TEXT NOT NULL DEFAULT 'pending'
            CHECK (state IN ('pending', 'delivered', 'read')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        delivered_at TIMESTAMP,
        read_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at);
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db():
    """Initialize database schema using the global connection."""
    conn = get_connection()
    init_db_with_conn(conn)


def reset_db(conn: sqlite3.Connection | None = None):
    """Reset database (for testing)."""
    conn = _get_conn(conn)
    # Foreign keys off so the tables can be dropped in any order
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS room_members;
        DROP TABLE IF EXISTS rooms;
        DROP TABLE IF EXISTS identities;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- Identity Operations ---


_IDENTITY_COLUMNS = """username, public_key, created_at, last_seen,
                       password_hash IS NOT NULL AS is_authenticated"""


def create_account(
    username: str,
    password_hash: str,
    public_key: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a persistent, password-backed identity.

    This is the auth collaborator's write path; the engine never creates
    accounts itself.

    Raises:
        ValueError: If the username is already taken by any identity.
    """
    conn = _get_conn(conn)
    now = _now()
    try:
        conn.execute(
            """INSERT INTO identities (username, password_hash, public_key, created_at, last_seen)
               VALUES (?, ?, ?, ?, ?)""",
            (username, password_hash, public_key, now, now),
        )
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise ValueError(f"Username {username} is already taken") from e

    return {
        "username": username,
        "public_key": public_key,
        "created_at": now,
        "last_seen": now,
        "is_authenticated": True,
    }


def get_identity(username: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get an identity by username.

    The password credential itself is never returned; ``is_authenticated``
    reports whether one exists.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE username = ?",
        (username,),
    )
    row = _row_to_dict(cursor.fetchone())
    if row:
        row["is_authenticated"] = bool(row["is_authenticated"])
    return row


def upsert_identity(
    username: str,
    public_key: str | None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Insert an identity or refresh its public key and last-seen time.

    Never touches an existing password credential.
    """
    conn = _get_conn(conn)
    now = _now()
    conn.execute(
        """INSERT INTO identities (username, public_key, created_at, last_seen)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(username) DO UPDATE SET
               public_key = excluded.public_key,
               last_seen = excluded.last_seen""",
        (username, public_key, now, now),
    )
    conn.commit()
    return get_identity(username, conn=conn)  # type: ignore[return-value]


def ensure_identity(
    username: str,
    public_key: str | None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Create a legacy identity row if it does not exist.

    Used to re-materialise a live session's identity after its row was
    reclaimed by an owner-leave cascade.

    Returns:
        True if a row was created, False if it already existed.
    """
    conn = _get_conn(conn)
    now = _now()
    cursor = conn.execute(
        """INSERT OR IGNORE INTO identities (username, public_key, created_at, last_seen)
           VALUES (?, ?, ?, ?)""",
        (username, public_key, now, now),
    )
    conn.commit()
    return cursor.rowcount > 0


def touch_last_seen(username: str, conn: sqlite3.Connection | None = None) -> bool:
    """Record that an identity was just seen."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "UPDATE identities SET last_seen = ? WHERE username = ?",
        (_now(), username),
    )
    conn.commit()
    return cursor.rowcount > 0


# --- Room Operations ---


def generate_room_code(length: int = DEFAULT_ROOM_CODE_LENGTH) -> str:
    """Generate a random room code from uppercase letters and digits."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def normalize_room_code(code: str) -> str:
    return code.strip().upper()


def create_room(
    owner_username: str,
    room_class: str | None = None,
    code_length: int = DEFAULT_ROOM_CODE_LENGTH,
    max_attempts: int = DEFAULT_ROOM_CODE_ATTEMPTS,
    code_factory: Callable[[int], str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a room owned by ``owner_username``.

    The room row and the owner's membership are written in one transaction.
    Candidate codes that collide with an existing room are discarded and a
    new one is drawn, up to ``max_attempts`` times.

    Args:
        owner_username: Identity that owns the room (must exist)
        room_class: "legacy" or "authenticated"; defaults to the owner's class
        code_length: Number of characters in the room code
        max_attempts: Upper bound on code draws
        code_factory: Callable producing a candidate code of a given length
                      (defaults to generate_room_code)
        conn: Optional database connection

    Returns:
        Room info dict with room_id, room_code, owner_username, room_class, created_at

    Raises:
        ValueError: If the owner does not exist or room_class is unknown
        RuntimeError: If no unique code was found within max_attempts
    """
    conn = _get_conn(conn)
    code_factory = code_factory or generate_room_code

    owner = get_identity(owner_username, conn=conn)
    if not owner:
        raise ValueError(f"Owner {owner_username} not found")

    if room_class is None:
        room_class = ROOM_CLASS_AUTHENTICATED if owner["is_authenticated"] else ROOM_CLASS_LEGACY
    if room_class not in ROOM_CLASSES:
        raise ValueError(f"Unknown room class {room_class!r}")

    for _ in range(max_attempts):
        room_code = normalize_room_code(code_factory(code_length))
        cursor = conn.execute("SELECT 1 FROM rooms WHERE room_code = ?", (room_code,))
        if cursor.fetchone():
            continue

        room_id = str(make_uuid7())
        now = _now()
        try:
            conn.execute(
                """INSERT INTO rooms (room_id, room_code, owner_username, room_class, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (room_id, room_code, owner_username, room_class, now),
            )
            conn.execute(
                "INSERT INTO room_members (room_id, username, joined_at) VALUES (?, ?, ?)",
                (room_id, owner_username, now),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            if "room_code" in str(e):
                continue
            raise

        return {
            "room_id": room_id,
            "room_code": room_code,
            "owner_username": owner_username,
            "room_class": room_class,
            "created_at": now,
        }

    raise RuntimeError(f"Could not allocate a unique room code after {max_attempts} attempts")


def get_room(room_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get room by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT room_id, room_code, owner_username, room_class, created_at
           FROM rooms WHERE room_id = ?""",
        (room_id,),
    )
    return _row_to_dict(cursor.fetchone())


def get_room_by_code(room_code: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get room by its short code (case-insensitive)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT room_id, room_code, owner_username, room_class, created_at
           FROM rooms WHERE room_code = ?""",
        (normalize_room_code(room_code),),
    )
    return _row_to_dict(cursor.fetchone())


def list_rooms(conn: sqlite3.Connection | None = None) -> list[dict]:
    """List all rooms with their member and message counts."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.room_id, r.room_code, r.owner_username, r.room_class, r.created_at,
                  (SELECT COUNT(*) FROM room_members m WHERE m.room_id = r.room_id)
                      AS member_count,
                  (SELECT COUNT(*) FROM messages msg WHERE msg.room_id = r.room_id)
                      AS message_count
           FROM rooms r
           ORDER BY r.created_at"""
    )
    return _rows_to_dicts(cursor.fetchall())


def list_rooms_for_identity(username: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List rooms that an identity is a member of."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.room_id, r.room_code, r.owner_username, r.room_class, r.created_at,
                  m.joined_at,
                  (SELECT COUNT(*) FROM room_members rm WHERE rm.room_id = r.room_id)
                      AS member_count
           FROM rooms r
           JOIN room_members m ON r.room_id = m.room_id
           WHERE m.username = ?
           ORDER BY r.created_at""",
        (username,),
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Membership Operations ---


def is_room_member(room_id: str, username: str, conn: sqlite3.Connection | None = None) -> bool:
    """Check if an identity is a member of a room."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT 1 FROM room_members WHERE room_id = ? AND username = ?",
        (room_id, username),
    )
    return cursor.fetchone() is not None


def add_room_member(room_id: str, username: str, conn: sqlite3.Connection | None = None) -> dict:
    """Add a member to a room. Adding an existing member is a no-op.

    Returns:
        Member info dict

    Raises:
        ValueError: If the room or the identity does not exist
    """
    conn = _get_conn(conn)

    if not get_room(room_id, conn=conn):
        raise ValueError(f"Room {room_id} not found")

    if not get_identity(username, conn=conn):
        raise ValueError(f"Identity {username} not found")

    conn.execute(
        "INSERT OR IGNORE INTO room_members (room_id, username, joined_at) VALUES (?, ?, ?)",
        (room_id, username, _now()),
    )
    conn.commit()

    cursor = conn.execute(
        "SELECT room_id, username, joined_at FROM room_members WHERE room_id = ? AND username = ?",
        (room_id, username),
    )
    return _row_to_dict(cursor.fetchone())  # type: ignore[return-value]


def remove_room_member(room_id: str, username: str, conn: sqlite3.Connection | None = None) -> bool:
    """Remove a member from a room.

    Returns:
        True if removed, False if not a member
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM room_members WHERE room_id = ? AND username = ?",
        (room_id, username),
    )
    conn.commit()
    return cursor.rowcount > 0


def list_room_members(room_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List members of a room in join order, with their public keys."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT m.username, m.joined_at, i.public_key,
                  i.password_hash IS NOT NULL AS is_authenticated
           FROM room_members m
           JOIN identities i ON i.username = m.username
           WHERE m.room_id = ?
           ORDER BY m.joined_at, m.rowid""",
        (room_id,),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    for row in rows:
        row["is_authenticated"] = bool(row["is_authenticated"])
    return rows


def count_memberships(username: str, conn: sqlite3.Connection | None = None) -> int:
    """Count the rooms an identity belongs to."""
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT COUNT(*) FROM room_members WHERE username = ?", (username,))
    return cursor.fetchone()[0]


# --- Message Operations ---


_MESSAGE_COLUMNS = """message_id, room_id, sender_username, ciphertext, iv, attachment_ref,
                      state, created_at, delivered_at, read_at"""


def store_message(
    room_id: str,
    sender_username: str,
    ciphertext: str,
    iv: str,
    attachment_ref: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Persist an opaque message in the pending state.

    Raises:
        ValueError: If the room does not exist or the sender is not a member
    """
    conn = _get_conn(conn)

    if not get_room(room_id, conn=conn):
        raise ValueError(f"Room {room_id} not found")

    if not is_room_member(room_id, sender_username, conn=conn):
        raise ValueError(f"Identity {sender_username} is not a member of room {room_id}")

    message_id = str(make_uuid7())
    now = _now()

    conn.execute(
        """INSERT INTO messages
               (message_id, room_id, sender_username, ciphertext, iv, attachment_ref,
                state, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (message_id, room_id, sender_username, ciphertext, iv, attachment_ref, PENDING, now),
    )
    conn.commit()

    return {
        "message_id": message_id,
        "room_id": room_id,
        "sender_username": sender_username,
        "ciphertext": ciphertext,
        "iv": iv,
        "attachment_ref": attachment_ref,
        "state": PENDING,
        "created_at": now,
        "delivered_at": None,
        "read_at": None,
    }


def get_message(message_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a single message by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = ?",
        (message_id,),
    )
    return _row_to_dict(cursor.fetchone())


def get_room_messages(
    room_id: str,
    limit: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Get a room's messages in send order.

    Args:
        room_id: Room ID
        limit: If given, only the most recent ``limit`` messages
        conn: Optional database connection
    """
    conn = _get_conn(conn)
    if limit is None:
        cursor = conn.execute(
            f"""SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE room_id = ? ORDER BY created_at, message_id""",
            (room_id,),
        )
        return _rows_to_dicts(cursor.fetchall())

    cursor = conn.execute(
        f"""SELECT * FROM (
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE room_id = ? ORDER BY created_at DESC, message_id DESC LIMIT ?
            ) ORDER BY created_at, message_id""",
        (room_id, limit),
    )
    return _rows_to_dicts(cursor.fetchall())


def count_room_messages(room_id: str, conn: sqlite3.Connection | None = None) -> int:
    """Count the messages stored for a room."""
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT COUNT(*) FROM messages WHERE room_id = ?", (room_id,))
    return cursor.fetchone()[0]


def advance_message_state(
    message_id: str,
    target: str,
    by_username: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Move a message forward to ``target``.

    The update is conditional, so it is a no-op when the message is already
    at or past the target state, and when ``by_username`` is the sender.
    ``by_username=None`` means the server itself is advancing the message.
    Reading a pending message stamps delivered_at as well.

    Returns:
        The updated message dict, or None if nothing changed
    """
    if target not in (DELIVERED, READ):
        raise ValueError(f"Cannot advance a message to {target!r}")

    conn = _get_conn(conn)
    now = _now()
    earlier = MESSAGE_STATES[: MESSAGE_STATES.index(target)]
    placeholders = ", ".join("?" for _ in earlier)

    if target == DELIVERED:
        sql = f"UPDATE messages SET state = ?, delivered_at = ? WHERE message_id = ? AND state IN ({placeholders})"
        params: list[Any] = [DELIVERED, now, message_id, *earlier]
    else:
        sql = f"""UPDATE messages SET state = ?, read_at = ?, delivered_at = COALESCE(delivered_at, ?)
                  WHERE message_id = ? AND state IN ({placeholders})"""
        params = [READ, now, now, message_id, *earlier]

    if by_username is not None:
        sql += " AND sender_username != ?"
        params.append(by_username)

    cursor = conn.execute(sql, params)
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_message(message_id, conn=conn)


def delete_message(message_id: str, conn: sqlite3.Connection | None = None) -> bool:
    """Delete a message. Returns True if a row was removed."""
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM messages WHERE message_id = ?", (message_id,))
    conn.commit()
    return cursor.rowcount > 0


# --- Ephemeral Cleanup ---


def delete_room_cascade(room_id: str, conn: sqlite3.Connection | None = None) -> dict:
    """Delete a room and everything that only existed because of it.

    In one transaction: delete the room's messages, capture and delete its
    memberships, delete the room row, then delete every captured identity
    that is left with no memberships and holds no password credential.
    Any failure rolls the whole cascade back.

    Returns:
        Report dict with room_id, deleted_messages, former_members and
        reclaimed_identities

    Raises:
        ValueError: If the room does not exist
    """
    conn = _get_conn(conn)

    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        cursor = conn.execute("SELECT 1 FROM rooms WHERE room_id = ?", (room_id,))
        if not cursor.fetchone():
            raise ValueError(f"Room {room_id} not found")

        cursor = conn.execute("DELETE FROM messages WHERE room_id = ?", (room_id,))
        deleted_messages = cursor.rowcount

        cursor = conn.execute(
            "SELECT username FROM room_members WHERE room_id = ? ORDER BY joined_at, rowid",
            (room_id,),
        )
        former_members = [row[0] for row in cursor.fetchall()]
        conn.execute("DELETE FROM room_members WHERE room_id = ?", (room_id,))

        conn.execute("DELETE FROM rooms WHERE room_id = ?", (room_id,))

        reclaimed: list[str] = []
        for username in former_members:
            cursor = conn.execute(
                """DELETE FROM identities
                   WHERE username = ?
                     AND password_hash IS NULL
                     AND NOT EXISTS (SELECT 1 FROM room_members WHERE username = ?)""",
                (username, username),
            )
            if cursor.rowcount:
                reclaimed.append(username)

        conn.commit()
    except BaseException:
        conn.rollback()
        raise

    return {
        "room_id": room_id,
        "deleted_messages": deleted_messages,
        "former_members": former_members,
        "reclaimed_identities": reclaimed,
    }


# --- Stats ---


def get_stats(conn: sqlite3.Connection | None = None) -> dict:
    """Row counts for the HTTP stats endpoint and the CLI."""
    conn = _get_conn(conn)
    stats: dict[str, Any] = {}
    for key, sql in (
        ("identities", "SELECT COUNT(*) FROM identities"),
        ("accounts", "SELECT COUNT(*) FROM identities WHERE password_hash IS NOT NULL"),
        ("rooms", "SELECT COUNT(*) FROM rooms"),
        ("memberships", "SELECT COUNT(*) FROM room_members"),
        ("messages", "SELECT COUNT(*) FROM messages"),
    ):
        stats[key] = conn.execute(sql).fetchone()[0]

    by_state = {state: 0 for state in MESSAGE_STATES}
    for row in conn.execute("SELECT state, COUNT(*) FROM messages GROUP BY state"):
        by_state[row[0]] = row[1]
    stats["messages_by_state"] = by_state
    return stats
