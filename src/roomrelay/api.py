"""FastAPI application for roomrelay: the /ws event surface plus health, stats and metrics."""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from . import db
from ._version import __version__
from .auth_provider import get_auth_method_name, resolve_principal
from .engine import get_engine, reset_engine
from .errors import PersistenceFailure
from .metrics import metrics
from .transport import Transport

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and the engine, and close both on shutdown."""
    db.init_db()
    get_engine()
    logger.info(f"roomrelay {__version__} ready (auth: {get_auth_method_name()})")

    yield

    reset_engine()
    db.close_db()


app = FastAPI(
    title="roomrelay",
    description="Relay for end-to-end encrypted chat rooms",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    path = request.url.path
    endpoint = path[1:] if path in ("/health", "/stats", "/metrics") else "other"
    metrics.record_request(endpoint, duration_ms)

    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"
    return response


# --- Auth Helpers ---


def get_admin_token() -> str | None:
    return os.environ.get("ROOMRELAY_ADMIN_TOKEN")


def require_admin(x_admin_token: str | None) -> None:
    """Verify the X-Admin-Token header against ROOMRELAY_ADMIN_TOKEN."""
    admin_token = get_admin_token()
    if not admin_token:
        raise HTTPException(500, "No admin token configured. Set ROOMRELAY_ADMIN_TOKEN")

    if not x_admin_token:
        raise HTTPException(401, "X-Admin-Token header required")

    if x_admin_token != admin_token:
        raise HTTPException(403, "Invalid admin token")


# --- WebSocket surface ---


class WebSocketTransport(Transport):
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, frame: dict) -> None:
        await self.websocket.send_json(frame)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


@app.websocket("/ws")
async def relay_socket(websocket: WebSocket, token: str | None = None):
    """One connection: resolve its principal, then feed every frame to the engine."""
    auth = resolve_principal(websocket.headers.get("authorization"), token)
    if auth is not None and not auth.valid:
        logger.warning(f"Rejected connection: {auth.error}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=auth.error or "Invalid token")
        return

    await websocket.accept()
    engine = get_engine()
    connection_id = engine.connect(WebSocketTransport(websocket), principal=auth.username if auth else None)
    try:
        while True:
            text = await websocket.receive_text()
            await engine.handle_text(connection_id, text)
    except WebSocketDisconnect:
        pass
    finally:
        await engine.disconnect(connection_id)


# --- HTTP surface ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/stats")
async def get_stats():
    """Store row counts plus the number of identities online right now."""
    engine = get_engine()
    try:
        stats = await engine.store.run(db.get_stats)
    except PersistenceFailure as e:
        raise HTTPException(503, e.message) from e
    stats["onlineUsers"] = engine.sessions.online_count()
    stats["connections"] = engine.sessions.connection_count()
    return stats


@app.get("/metrics")
def get_metrics(x_admin_token: Annotated[str | None, Header()] = None):
    """Get application metrics. Requires admin authentication."""
    require_admin(x_admin_token)
    return metrics.to_dict()
