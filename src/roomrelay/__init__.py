"""roomrelay - Room and message relay for end-to-end encrypted chat.

The server never sees plaintext: clients exchange public keys through room
membership and send ciphertext + iv, which the relay stores and forwards
while tracking each message's delivery state.

Usage:
    from roomrelay import RelayEngine
    from roomrelay.transport import InMemoryTransport

    engine = RelayEngine()
    alice = engine.connect(InMemoryTransport())
    await engine.dispatch(alice, "register", {"username": "alice", "publicKey": "..."})
    await engine.dispatch(alice, "create-room")

Run the WebSocket server with `roomrelay serve`.
"""

from roomrelay._version import __version__
from roomrelay.config import ServerConfig
from roomrelay.engine import RelayEngine
from roomrelay.errors import RelayError

__all__ = [
    "__version__",
    "RelayEngine",
    "RelayError",
    "ServerConfig",
]
