"""CLI for running and inspecting a roomrelay server.

Configuration lives in ~/.config/roomrelay/config.yaml (see config.py).

    roomrelay serve                 # run the WebSocket relay
    roomrelay config init           # write a config file with defaults
    roomrelay stats --url ...       # query a running server
    roomrelay db rooms --path ...   # inspect a local database
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path

import cyclopts
import httpx

from . import db
from .config import ServerConfig, get_config_path

app = cyclopts.App(
    name="roomrelay",
    help="Relay for end-to-end encrypted chat rooms",
)

config_app = cyclopts.App(name="config", help="Server configuration")
db_app = cyclopts.App(name="db", help="Local database operations")

app.command(config_app)
app.command(db_app)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def _resolve_db_path(path: str | None) -> str:
    db_path = path or ServerConfig.load().db_path
    if db_path == ":memory:":
        print("Error: no database file configured. Pass --path or set ROOMRELAY_DB.", file=sys.stderr)
        sys.exit(1)
    return db_path


@app.command
def serve(
    *,
    host: str | None = None,
    port: int | None = None,
    db_path: str | None = None,
    reload: bool = False,
):
    """Run the relay server.

    Settings not given on the command line come from the config file and
    ROOMRELAY_* environment variables.
    """
    import uvicorn

    config = ServerConfig.load()
    if db_path:
        config.db_path = db_path

    # The database module reads its path from the environment
    os.environ["ROOMRELAY_DB"] = config.db_path
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.db_path == ":memory:":
        print("WARNING: Using an in-memory database. Rooms are lost on restart.")

    uvicorn.run(
        "roomrelay.api:app",
        host=host or config.host,
        port=port or config.port,
        reload=reload,
        log_level=config.log_level.lower(),
    )


@app.command
def stats(*, url: str | None = None, admin_token: str | None = None):
    """Show row counts from a running server, plus metrics if an admin token is given."""
    if url is None:
        config = ServerConfig.load()
        url = f"http://{config.host}:{config.port}"

    try:
        response = httpx.get(f"{url}/stats", timeout=30.0)
    except httpx.HTTPError as e:
        print(f"Error: could not reach {url}: {e}", file=sys.stderr)
        sys.exit(1)

    if response.status_code >= 400:
        print(f"Error {response.status_code}: {response.text}", file=sys.stderr)
        sys.exit(1)
    result = {"stats": response.json()}

    admin_token = admin_token or os.environ.get("ROOMRELAY_ADMIN_TOKEN")
    if admin_token:
        response = httpx.get(f"{url}/metrics", headers={"X-Admin-Token": admin_token}, timeout=30.0)
        if response.status_code >= 400:
            print(f"Error {response.status_code}: {response.text}", file=sys.stderr)
            sys.exit(1)
        result["metrics"] = response.json()

    print_json(result)


@config_app.command(name="show")
def config_show():
    """Show the effective configuration."""
    path = get_config_path()
    print(f"# {path}{'' if path.exists() else ' (not found, using defaults)'}")
    print_json(ServerConfig.load().to_dict())


@config_app.command(name="init")
def config_init(*, path: Path | None = None, force: bool = False):
    """Write a config file with default settings."""
    target = path or get_config_path()
    if target.exists() and not force:
        print(f"Config already exists at {target}. Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)
    written = ServerConfig().save(target)
    print(f"Wrote {written}")


@db_app.command(name="init")
def db_init(*, path: str | None = None):
    """Create the schema in a database file and run pending migrations."""
    db_path = _resolve_db_path(path)
    with db.scoped_connection(db_path) as conn:
        db.init_db_with_conn(conn)
        version = db.get_schema_version(conn)
    print(f"Initialized {db_path} (schema version {version})")


@db_app.command(name="rooms")
def db_rooms(*, path: str | None = None, as_json: bool = False):
    """List the rooms in a database file."""
    db_path = _resolve_db_path(path)
    with db.scoped_connection(db_path) as conn:
        db.init_db_with_conn(conn)
        rooms = db.list_rooms(conn=conn)

    if as_json:
        print_json(rooms)
        return

    if not rooms:
        print("No rooms.")
        return

    for room in rooms:
        print(
            f"{room['room_code']}  {room['room_id']}  owner={room['owner_username']}  "
            f"class={room['room_class']}  members={room['member_count']}  "
            f"messages={room['message_count']}"
        )


def main():
    app()


if __name__ == "__main__":
    main()
