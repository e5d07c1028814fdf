"""
Relay connection seam.

The mailbox never touches sockets directly. It asks a `Connector` for a
`RelayConnection` and exchanges text frames through it. Production code
uses websockets via aiohttp. Tests substitute an in-memory relay.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import aiohttp

logger = logging.getLogger(__name__)


@runtime_checkable
class RelayConnection(Protocol):
    """One persistent, text-framed connection to the relay."""

    async def send(self, text: str) -> None:
        """Write one frame."""
        ...

    async def receive(self) -> str | None:
        """Read the next text frame, or None once the connection is closed."""
        ...

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...


@runtime_checkable
class Connector(Protocol):
    """Factory for relay connections."""

    async def connect(self, url: str) -> RelayConnection:
        """Open a connection to the given mailbox URL."""
        ...

    async def close(self) -> None:
        """Release resources shared by all connections."""
        ...


@dataclass(slots=True)
class WebSocketConnection:
    """Relay connection over an aiohttp client websocket."""

    ws: aiohttp.ClientWebSocketResponse
    """Underlying websocket."""

    async def send(self, text: str) -> None:
        """Write one text frame."""
        await self.ws.send_str(text)

    async def receive(self) -> str | None:
        """
        Read the next text frame.

        Binary, ping and pong frames are skipped. Close and error frames end
        the stream.
        """
        while True:
            msg = await self.ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Relay websocket error: %s", self.ws.exception())
                return None

    async def close(self) -> None:
        """Close the websocket."""
        if not self.ws.closed:
            await self.ws.close()


@dataclass(slots=True)
class WebSocketConnector:
    """Opens websocket connections to the relay, sharing one HTTP session."""

    heartbeat_secs: float | None = 30.0
    """Interval for websocket pings. Detects half-open connections."""

    _session: aiohttp.ClientSession | None = field(default=None, init=False, repr=False)
    """Lazily created client session."""

    async def connect(self, url: str) -> RelayConnection:
        """
        Open a websocket to the mailbox URL.

        Raises:
            aiohttp.ClientError: If the relay cannot be reached or refuses the upgrade.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

        ws = await self._session.ws_connect(url, heartbeat=self.heartbeat_secs)
        return WebSocketConnection(ws)

    async def close(self) -> None:
        """Close the shared client session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
