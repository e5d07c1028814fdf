"""
Session transport over the untrusted relay.

The mailbox owns one relay connection at a time. It runs an authenticated
Diffie-Hellman handshake on top of it, derives a session key, and from then
on carries arbitrary JSON payloads sealed with AES-GCM.

Handshake flow (symmetric, both parties run the same steps):
    -> handshake {pk: our ephemeral key, sig: HMAC(shared secret, pk)}
    <- handshake {pk: their ephemeral key, sig: HMAC(shared secret, pk)}
    verify their sig, then session key = X25519(our sk, their pk)

Reconnects and relay resets restart the handshake with a fresh ephemeral
key. A handshake arriving on a live session rekeys it in place.

Event processing is run-to-completion: events are queued and handled one
at a time on the event loop. A transition and its effects finish before the
next event is looked at. Network work runs in tasks that report back by
queueing new events.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import x25519

from commit_reveal.crypto import (
    CryptoError,
    decrypt_message,
    derive_session_key,
    encrypt_message,
    export_public_key,
    generate_keypair,
    import_public_key,
    sign_public_key,
    verify_public_key,
)
from commit_reveal.secret import SharedSecret

from .config import MailboxConfig
from .connection import Connector, RelayConnection, WebSocketConnector
from .fsm import (
    DeriveSessionKey,
    DropConnection,
    GenerateKeyPair,
    InvalidateSessionKey,
    MailboxCommand,
    MailboxEvent,
    MailboxState,
    NotifyConnected,
    NotifyDisconnected,
    OpenConnection,
    ReportFailure,
    SendHandshake,
    Transition,
    initial_commands,
    transition,
)
from .messages import (
    CryptogramFrame,
    FrameError,
    HandshakeFrame,
    ResetFrame,
    encode_frame,
    parse_frame,
)

logger = logging.getLogger(__name__)


class MailboxError(Exception):
    """Base class for mailbox failures surfaced to callers."""


class MailboxNotEstablishedError(MailboxError):
    """Raised when sending while no session key is in place."""


class MailboxClosedError(MailboxError):
    """Raised when using a mailbox after close()."""


def _ignore_payload(_payload: Any) -> None:
    """Default message observer."""


def _ignore() -> None:
    """Default connect/disconnect observer."""


def _ignore_reason(_reason: str) -> None:
    """Default failure observer."""


def _ignore_transition(_transition: Transition) -> None:
    """Default state observer."""


@dataclass(slots=True)
class Mailbox:
    """
    Encrypted, authenticated channel to the single peer behind a mailbox URL.

    Usage:
        mailbox = Mailbox(url, secret, on_message=handle)
        mailbox.start()
        # ... wait for on_connect ...
        await mailbox.send({"type": "commitment", "commitment": "..."})
        await mailbox.close()

    Thread safety: NOT thread-safe. All calls must happen on the event loop
    that ran start().
    """

    url: str
    """Relay mailbox URL, including role and rendezvous id."""

    shared_secret: SharedSecret = field(repr=False)
    """Key that authenticates both handshakes."""

    connector: Connector = field(default_factory=WebSocketConnector)
    """Opens relay connections."""

    config: MailboxConfig = field(default_factory=MailboxConfig)
    """Timing and size limits."""

    on_message: Callable[[Any], None] = _ignore_payload
    """Called with each decrypted inbound payload."""

    on_connect: Callable[[], None] = _ignore
    """Called whenever a session key becomes usable."""

    on_disconnect: Callable[[], None] = _ignore
    """Called whenever a usable session key is lost (reset, rekey or close)."""

    on_failure: Callable[[str], None] = _ignore_reason
    """Called once when the mailbox reaches FAILED."""

    on_state_change: Callable[[Transition], None] = _ignore_transition
    """Called after every transition."""

    _state: MailboxState = field(default=MailboxState.START, init=False)
    """Current state machine state."""

    _started: bool = field(default=False, init=False)
    """Whether start() ran."""

    _closed: bool = field(default=False, init=False)
    """Whether close() ran. Suppresses all further events."""

    _private_key: x25519.X25519PrivateKey | None = field(default=None, init=False, repr=False)
    """Ephemeral key of the current handshake attempt."""

    _session_key: bytes | None = field(default=None, init=False, repr=False)
    """AES-256-GCM key of the current epoch."""

    _peer_handshake: HandshakeFrame | None = field(default=None, init=False, repr=False)
    """Latest unconsumed peer handshake."""

    _connection: RelayConnection | None = field(default=None, init=False, repr=False)
    """Live relay connection. Replaced, never reused, on reconnect."""

    _reader: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    """Task reading frames from the live connection."""

    _opener: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    """Pending connection attempt, if any."""

    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)
    """All background tasks, kept referenced until done."""

    _pending: deque[MailboxEvent] = field(default_factory=deque, init=False, repr=False)
    """Events waiting to be processed."""

    _dispatching: bool = field(default=False, init=False, repr=False)
    """Whether the event queue is being drained."""

    @property
    def state(self) -> MailboxState:
        """Current transport state."""
        return self._state

    @property
    def is_established(self) -> bool:
        """Whether send() would currently be accepted."""
        return not self._closed and self._state is MailboxState.ESTABLISHED

    @property
    def is_closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    def start(self) -> None:
        """
        Generate the first ephemeral key and start connecting.

        Must be called from a running event loop.

        Raises:
            MailboxError: If the mailbox was already started or closed.
        """
        if self._closed:
            raise MailboxClosedError("Mailbox is closed")
        if self._started:
            raise MailboxError("Mailbox already started")
        self._started = True

        logger.debug("Mailbox FSM: entering %s", self._state.name)
        self._dispatching = True
        try:
            self._run_commands(initial_commands())
        finally:
            self._dispatching = False
        self._drain()

    async def send(self, payload: Any) -> None:
        """
        Encrypt a payload under the session key and send it to the peer.

        A fresh random IV is used for every call.

        Raises:
            MailboxClosedError: If close() was called.
            MailboxNotEstablishedError: If there is no usable session key.
            Exception: Whatever the connection raises on write.
        """
        if self._closed:
            raise MailboxClosedError("Mailbox is closed")

        connection = self._connection
        key = self._session_key
        if self._state is not MailboxState.ESTABLISHED or key is None or connection is None:
            raise MailboxNotEstablishedError("Not established")

        frame = CryptogramFrame.seal(encrypt_message(key, payload))
        await connection.send(encode_frame(frame))

    async def close(self) -> None:
        """
        Tear down the connection and stop reconnecting.

        Detaches the connection first so no further events fire from it.
        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        self._session_key = None

        connection = self._detach_connection()

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if connection is not None:
            await self._close_quietly(connection)
        await self.connector.close()
        logger.info("Mailbox closed: %s", self.url)

    # -------------------------------------------------------------------------
    # Event dispatch
    # -------------------------------------------------------------------------

    def _dispatch(self, event: MailboxEvent) -> None:
        self._pending.append(event)
        self._drain()

    def _drain(self) -> None:
        # Effects may queue more events. They are handled by the outermost
        # call, after the current transition has finished.
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                self._step(self._pending.popleft())
        finally:
            self._dispatching = False

    def _step(self, event: MailboxEvent) -> None:
        if self._closed:
            logger.debug("Mailbox closed, ignoring %s", event.name)
            return
        if self._state.is_terminal:
            logger.debug("Mailbox in %s, ignoring %s", self._state.name, event.name)
            return

        result = transition(
            self._state,
            event,
            reconnect_delay_secs=self.config.reconnect_delay_secs,
        )
        logger.debug(
            "Mailbox FSM: %s -[%s]-> %s",
            result.source.name,
            result.event.name,
            result.target.name,
        )
        self._state = result.target
        self._run_commands(result.commands)
        self.on_state_change(result)

    def _run_commands(self, commands: Iterable[MailboxCommand]) -> None:
        for command in commands:
            match command:
                case GenerateKeyPair():
                    self._generate_keypair()
                case OpenConnection(delay=delay):
                    self._cancel(self._opener)
                    self._opener = self._spawn(self._open_connection(delay))
                case DropConnection():
                    self._cancel(self._opener)
                    self._opener = None
                    connection = self._detach_connection()
                    if connection is not None:
                        self._spawn(self._close_quietly(connection))
                case SendHandshake(rotate_key=rotate_key):
                    self._send_handshake(rotate_key)
                case DeriveSessionKey():
                    self._derive_session_key()
                case InvalidateSessionKey():
                    self._session_key = None
                case NotifyConnected():
                    logger.info("Mailbox established: %s", self.url)
                    self.on_connect()
                case NotifyDisconnected():
                    logger.info("Mailbox no longer established: %s", self.url)
                    self.on_disconnect()
                case ReportFailure(reason=reason):
                    logger.error("Mailbox failed: %s", reason)
                    self.on_failure(reason)

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    def _generate_keypair(self) -> None:
        try:
            self._private_key = generate_keypair()
        except Exception as e:
            logger.error("Ephemeral key generation failed: %s", e)
            self._dispatch(MailboxEvent.KEY_GENERATION_FAILED)
            return
        self._dispatch(MailboxEvent.KEY_GENERATED)

    def _send_handshake(self, rotate_key: bool) -> None:
        if rotate_key or self._private_key is None:
            try:
                self._private_key = generate_keypair()
            except Exception as e:
                logger.error("Ephemeral key rotation failed: %s", e)
                self._dispatch(MailboxEvent.KEY_GENERATION_FAILED)
                return

        connection = self._connection
        if connection is None:
            logger.error("No relay connection to send the handshake on")
            return

        public_key = self._private_key.public_key()
        frame = HandshakeFrame(
            pk=export_public_key(public_key),
            sig=sign_public_key(self.shared_secret, public_key),
        )
        self._spawn(self._write(connection, encode_frame(frame)))

    def _derive_session_key(self) -> None:
        # The handshake is consumed exactly once.
        handshake, self._peer_handshake = self._peer_handshake, None
        private_key = self._private_key
        if handshake is None or private_key is None:
            logger.error("Session key derivation without a handshake or keypair")
            self._dispatch(MailboxEvent.VERIFICATION_FAILED)
            return

        try:
            peer_key = import_public_key(handshake.pk)
        except CryptoError as e:
            logger.warning("Peer handshake carries an invalid public key: %s", e)
            self._dispatch(MailboxEvent.VERIFICATION_FAILED)
            return

        # The signature check gates key derivation.
        if not verify_public_key(self.shared_secret, handshake.sig, peer_key):
            logger.warning("Peer handshake signature does not verify under the shared secret")
            self._dispatch(MailboxEvent.VERIFICATION_FAILED)
            return

        try:
            self._session_key = derive_session_key(peer_key, private_key)
        except ValueError as e:
            logger.warning("Key agreement with peer public key failed: %s", e)
            self._dispatch(MailboxEvent.VERIFICATION_FAILED)
            return
        self._dispatch(MailboxEvent.SESSION_ESTABLISHED)

    def _handle_frame(self, raw: str) -> None:
        if len(raw) > self.config.max_frame_size:
            logger.warning("Dropping oversized relay frame (%d chars)", len(raw))
            return

        try:
            frame = parse_frame(raw)
        except FrameError as e:
            logger.warning("Dropping relay frame: %s", e)
            return

        match frame:
            case ResetFrame():
                self._dispatch(MailboxEvent.RESET)
            case HandshakeFrame():
                if self._state is MailboxState.ESTABLISHED:
                    logger.info("Peer handshake on an established session, rekeying")
                self._peer_handshake = frame
                self._dispatch(MailboxEvent.HANDSHAKE_RECEIVED)
            case CryptogramFrame():
                self._deliver(frame)

    def _deliver(self, frame: CryptogramFrame) -> None:
        # Nothing is buffered across a state that is not ESTABLISHED.
        key = self._session_key
        if self._state is not MailboxState.ESTABLISHED or key is None:
            logger.warning("Dropping cryptogram received in state %s", self._state.name)
            return

        try:
            payload = decrypt_message(key, frame.unseal())
        except (InvalidTag, CryptoError, ValueError) as e:
            logger.warning("Dropping cryptogram that failed to decrypt: %s", type(e).__name__)
            return
        self.on_message(payload)

    # -------------------------------------------------------------------------
    # Connection tasks
    # -------------------------------------------------------------------------

    async def _open_connection(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)

        try:
            connection = await self.connector.connect(self.url)
        except Exception as e:
            logger.warning("Could not open relay connection to %s: %s", self.url, e)
            self._dispatch(MailboxEvent.CONNECTION_CLOSED)
            return

        if self._closed or self._state.is_terminal:
            await self._close_quietly(connection)
            return

        logger.info("Relay connection open: %s", self.url)
        self._connection = connection
        self._reader = self._spawn(self._read_frames(connection))
        self._dispatch(MailboxEvent.CONNECTION_OPENED)

    async def _read_frames(self, connection: RelayConnection) -> None:
        try:
            while True:
                raw = await connection.receive()
                if raw is None:
                    break
                # Frames from a replaced connection are stale.
                if connection is not self._connection:
                    return
                self._handle_frame(raw)
        except Exception as e:
            logger.warning("Relay connection error on %s: %s", self.url, e)

        if connection is self._connection:
            logger.info("Relay connection closed: %s", self.url)
            self._dispatch(MailboxEvent.CONNECTION_CLOSED)

    async def _write(self, connection: RelayConnection, text: str) -> None:
        try:
            await connection.send(text)
        except Exception as e:
            # Closing makes the reader observe the failure as a close event.
            logger.warning("Relay write failed on %s: %s", self.url, e)
            await self._close_quietly(connection)

    async def _close_quietly(self, connection: RelayConnection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.debug("Error while closing relay connection: %s", e)

    # -------------------------------------------------------------------------
    # Task bookkeeping
    # -------------------------------------------------------------------------

    def _detach_connection(self) -> RelayConnection | None:
        connection, self._connection = self._connection, None
        self._cancel(self._reader)
        self._reader = None
        return connection

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Mailbox task failed: %r", task.exception())

    @staticmethod
    def _cancel(task: asyncio.Task[None] | None) -> None:
        # A task never cancels itself. It is already on its way out.
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
