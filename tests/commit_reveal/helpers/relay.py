"""
In-memory relay for testing mailboxes and sessions without sockets.

Behaves like the websocket relay: one pair of queues per rendezvous id,
frames buffered while the receiving side is away, a reset notice queued
to the peer when a side disconnects, and a second connection for a role
already connected is refused.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from commit_reveal.relay import RESET_MESSAGE
from commit_reveal.secret import Role


@dataclass(slots=True)
class _Pair:
    to_alice: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    to_bob: asyncio.Queue[str] = field(default_factory=asyncio.Queue)
    connections: dict[Role, MemoryConnection] = field(default_factory=dict)

    def outbox(self, role: Role) -> asyncio.Queue[str]:
        return self.to_bob if role is Role.ALICE else self.to_alice

    def inbox(self, role: Role) -> asyncio.Queue[str]:
        return self.to_alice if role is Role.ALICE else self.to_bob


def _parse_mailbox_url(url: str) -> tuple[Role, str]:
    """Split '/{role}/mailbox/{id}' out of a mailbox URL."""
    role, _, rendezvous_id = urlsplit(url).path.strip("/").split("/")
    return Role(role), rendezvous_id


class MemoryConnection:
    """One side's connection to the in-memory relay."""

    def __init__(self, relay: MemoryRelay, pair: _Pair, role: Role) -> None:
        """Attach to a mailbox pair as the given role."""
        self._relay = relay
        self._pair = pair
        self.role = role
        self.sent: list[str] = []
        self._closed = asyncio.Event()

    @property
    def is_closed(self) -> bool:
        """Whether either side closed this connection."""
        return self._closed.is_set()

    async def send(self, text: str) -> None:
        """Queue a frame for the peer."""
        if self.is_closed:
            raise ConnectionResetError("Connection closed")
        self.sent.append(text)
        self._pair.outbox(self.role).put_nowait(text)

    async def receive(self) -> str | None:
        """Take the next queued frame, or None once closed."""
        if self.is_closed:
            return None

        get = asyncio.ensure_future(self._pair.inbox(self.role).get())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({get, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (get, closed):
                if not future.done():
                    future.cancel()

        if get.done() and not get.cancelled():
            return get.result()
        return None

    async def close(self) -> None:
        """Close from the client side."""
        self._relay.disconnect(self)


class MemoryConnector:
    """Connector handing out in-memory relay connections."""

    def __init__(self, relay: MemoryRelay) -> None:
        """Bind to a relay."""
        self._relay = relay
        self.closed = False

    async def connect(self, url: str) -> MemoryConnection:
        """Connect to the mailbox named by the URL."""
        return self._relay.connect(url)

    async def close(self) -> None:
        """Mark the connector closed."""
        self.closed = True


class MemoryRelay:
    """Relay whose mailboxes live in process memory."""

    def __init__(self) -> None:
        """Start with no mailboxes."""
        self._pairs: dict[str, _Pair] = {}
        self.connect_attempts: Counter[Role] = Counter()
        self.refuse: set[Role] = set()

    def connector(self) -> MemoryConnector:
        """Create a connector bound to this relay."""
        return MemoryConnector(self)

    def connect(self, url: str) -> MemoryConnection:
        """
        Open a connection for the role and rendezvous id in the URL.

        Raises:
            ConnectionRefusedError: If the role is refused or already connected.
        """
        role, rendezvous_id = _parse_mailbox_url(url)
        self.connect_attempts[role] += 1
        if role in self.refuse:
            raise ConnectionRefusedError(f"{role} refused")

        pair = self._pairs.setdefault(rendezvous_id, _Pair())
        if role in pair.connections:
            raise ConnectionRefusedError(f"{role} already connected")

        connection = MemoryConnection(self, pair, role)
        pair.connections[role] = connection
        return connection

    def connection(self, role: Role) -> MemoryConnection | None:
        """Return the live connection of a role, if any."""
        for pair in self._pairs.values():
            if role in pair.connections:
                return pair.connections[role]
        return None

    def disconnect(self, connection: MemoryConnection) -> None:
        """Close a connection and queue a reset for its peer."""
        if connection.is_closed:
            return
        connection._closed.set()
        pair = connection._pair
        if pair.connections.get(connection.role) is connection:
            del pair.connections[connection.role]
        pair.outbox(connection.role).put_nowait(RESET_MESSAGE)

    def drop(self, role: Role) -> None:
        """Simulate the network dropping a role's connection."""
        connection = self.connection(role)
        if connection is not None:
            self.disconnect(connection)
