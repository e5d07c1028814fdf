"""
Mailbox relay.

Pairs two websocket clients by rendezvous id and forwards text frames
between them. The relay holds no protocol state and never sees a key:
handshakes are signed and payloads are sealed end to end.

Routes:
- /alice/mailbox/{id} - Alice's end of a mailbox
- /bob/mailbox/{id} - Bob's end of a mailbox
- /health - Health check endpoint

Each mailbox is a pair of bounded queues, one per direction. A client
takes its ends on connect and gives them back on disconnect. Frames sent
while the peer is away stay queued until it reconnects. When a client
disconnects, a reset notice is queued for its peer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Final

from aiohttp import WSCloseCode, WSMsgType, web

from commit_reveal.mailbox.messages import ResetFrame, encode_frame
from commit_reveal.secret import Role

logger = logging.getLogger(__name__)

RESET_MESSAGE: Final = encode_frame(ResetFrame())
"""Notice queued to a peer when the other side disconnects."""

SERVICE_NAME: Final = "commit-reveal-relay"
"""Fixed service identifier returned by the health endpoint."""


async def _handle_health(_request: web.Request) -> web.Response:
    """Handle health check endpoint."""
    return web.json_response({"status": "healthy", "service": SERVICE_NAME})


@dataclass(frozen=True, slots=True)
class RelayServerConfig:
    """Configuration for the relay."""

    host: str = "127.0.0.1"
    """Host address to bind to."""

    port: int = 8910
    """Port to listen on. Zero picks a free port."""

    queue_size: int = 32
    """Frames buffered per direction while the receiving side is away."""


@dataclass(slots=True)
class _Mailbox:
    """The two directions of one rendezvous."""

    to_alice: asyncio.Queue[str]
    to_bob: asyncio.Queue[str]

    connected: set[Role] = field(default_factory=set)
    """Roles currently holding their ends."""

    held: dict[Role, str] = field(default_factory=dict)
    """Frame a role failed to receive, delivered before anything else on its next connection."""

    def outbox(self, role: Role) -> asyncio.Queue[str]:
        """Queue this role writes into."""
        return self.to_bob if role is Role.ALICE else self.to_alice

    def inbox(self, role: Role) -> asyncio.Queue[str]:
        """Queue this role reads from."""
        return self.to_alice if role is Role.ALICE else self.to_bob


@dataclass(slots=True)
class RelayServer:
    """
    Websocket relay between the two parties of each mailbox.

    Uses aiohttp for HTTP and websocket protocol handling.
    """

    config: RelayServerConfig = field(default_factory=RelayServerConfig)
    """Server configuration."""

    _mailboxes: dict[str, _Mailbox] = field(default_factory=dict, init=False)
    """Mailboxes by rendezvous id. Created on first use."""

    _runner: web.AppRunner | None = field(default=None, init=False)
    """The aiohttp application runner."""

    _site: web.TCPSite | None = field(default=None, init=False)
    """The TCP site for the server."""

    @property
    def port(self) -> int:
        """Port actually bound. Differs from the configured one when that is zero."""
        if self._runner is None or not self._runner.addresses:
            return self.config.port
        return self._runner.addresses[0][1]

    @property
    def url(self) -> str:
        """Websocket base URL clients should use."""
        return f"ws://{self.config.host}:{self.port}"

    def create_app(self) -> web.Application:
        """Build the aiohttp application serving the relay routes."""
        app = web.Application()
        app.add_routes(
            [
                web.get("/health", _handle_health),
                web.get("/{role:alice|bob}/mailbox/{id}", self._handle_mailbox),
            ]
        )
        return app

    async def start(self) -> None:
        """Start the relay in the background."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await self._site.start()

        logger.info("Relay listening on %s:%d", self.config.host, self.port)

    async def run(self) -> None:
        """
        Run the relay until shutdown.

        This method blocks until stop() is called.
        """
        await self.start()

        while self._runner is not None:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Gracefully stop the relay. Open websockets are closed."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Relay stopped")

    def _mailbox(self, rendezvous_id: str) -> _Mailbox:
        mailbox = self._mailboxes.get(rendezvous_id)
        if mailbox is None:
            logger.info("Mailbox %s opened", rendezvous_id)
            mailbox = _Mailbox(
                to_alice=asyncio.Queue(maxsize=self.config.queue_size),
                to_bob=asyncio.Queue(maxsize=self.config.queue_size),
            )
            self._mailboxes[rendezvous_id] = mailbox
        return mailbox

    async def _handle_mailbox(self, request: web.Request) -> web.WebSocketResponse:
        """
        Handle one end of a mailbox.

        Inbound text frames are forwarded verbatim into the peer's queue.
        Queued frames for this end are written out as they arrive. Binary
        and control frames are ignored.
        """
        role = Role(request.match_info["role"])
        rendezvous_id = request.match_info["id"]

        ws = web.WebSocketResponse()
        await ws.prepare(request)

        mailbox = self._mailbox(rendezvous_id)
        if role in mailbox.connected:
            logger.warning("Mailbox %s: %s already connected", rendezvous_id, role)
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"role already connected")
            return ws

        mailbox.connected.add(role)
        logger.info("Mailbox %s: %s connected", rendezvous_id, role)

        outbox = mailbox.outbox(role)
        forwarder = asyncio.create_task(self._forward(ws, mailbox, role))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await outbox.put(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Mailbox %s: %s websocket error: %s", rendezvous_id, role, ws.exception()
                    )
                    break
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder

            try:
                outbox.put_nowait(RESET_MESSAGE)
            except asyncio.QueueFull:
                logger.warning("Mailbox %s: no room to queue reset from %s", rendezvous_id, role)

            # Give the ends back so the role can reconnect.
            mailbox.connected.discard(role)
            logger.info("Mailbox %s: %s disconnected", rendezvous_id, role)

        return ws

    async def _forward(self, ws: web.WebSocketResponse, mailbox: _Mailbox, role: Role) -> None:
        inbox = mailbox.inbox(role)
        while True:
            text = mailbox.held.pop(role, None)
            if text is None:
                text = await inbox.get()
            try:
                await ws.send_str(text)
            except Exception as e:
                # The frame was not written. Keep it and let the client reconnect.
                mailbox.held[role] = text
                logger.warning("Could not forward frame to %s: %r", role, e)
                await ws.close()
                return
