"""Websocket relay pairing the two ends of each mailbox."""

from .server import RESET_MESSAGE, RelayServer, RelayServerConfig

__all__ = [
    "RESET_MESSAGE",
    "RelayServer",
    "RelayServerConfig",
]
