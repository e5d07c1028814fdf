"""
Commit-reveal session.

Drives the protocol state machine over a mailbox. Each party:

1. draws a nonce,
2. opens the mailbox and, whenever the user is ready, commits to a message,
3. sends the commitment once the channel is up,
4. reveals only after one commitment has gone each way,
5. recomputes the peer's commitment from its reveal and compares.

The session learns about the world through callbacks from the mailbox
and through commit(). Each one is turned into a protocol event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any

from commit_reveal.config import RELAY_URL
from commit_reveal.crypto import calculate_commitment, random16
from commit_reveal.mailbox import Mailbox, MailboxNotEstablishedError
from commit_reveal.secret import Role, SharedSecret, mailbox_url

from .fsm import (
    CloseMailbox,
    GenerateRandom,
    OpenMailbox,
    ProtocolCommand,
    ProtocolEvent,
    ProtocolSnapshot,
    ProtocolState,
    ProtocolTransition,
    ReportFailure,
    SendCommitment,
    SendReveal,
    VerifyPeer,
    initial_commands,
    transition,
)
from .messages import (
    CommitmentMessage,
    Payload,
    PayloadError,
    RevealMessage,
    encode_payload,
    parse_payload,
)

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    """Raised on misuse of a session or when the flow ends in FAIL."""


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of checking the peer's reveal against its commitment."""

    passed: bool
    """Whether the recomputed commitment equals the one received earlier."""

    their_message: str
    their_random: str
    their_commitment: str


type MailboxFactory = Callable[[str, SharedSecret], Mailbox]
"""Builds the mailbox for a mailbox URL and shared secret."""


def _default_mailbox(url: str, secret: SharedSecret) -> Mailbox:
    return Mailbox(url, secret)


def _ignore_transition(_transition: ProtocolTransition) -> None:
    """Default state observer."""


def _ignore_reason(_reason: str) -> None:
    """Default failure observer."""


def _ignore_commitment(_commitment: str) -> None:
    """Default peer commitment observer."""


def _ignore_connection(_connected: bool) -> None:
    """Default connection observer."""


@dataclass(slots=True)
class CommitRevealSession:
    """
    One run of the commit-reveal flow for one party.

    Usage:
        session = CommitRevealSession(Role.ALICE, secret)
        session.start()
        session.commit("heads")
        result = await session.result()

    A session is single-use. After FAIL or verification, start a new one.
    """

    role: Role
    """Which end of the mailbox we occupy."""

    secret: SharedSecret = field(repr=False)
    """Shared secret authenticating the transport."""

    relay_url: str = RELAY_URL
    """Base websocket URL of the relay."""

    mailbox_factory: MailboxFactory = _default_mailbox
    """Builds the transport. Replaced in tests."""

    on_state_change: Callable[[ProtocolTransition], None] = _ignore_transition
    """Called after every transition."""

    on_failure: Callable[[str], None] = _ignore_reason
    """Called once if the flow reaches FAIL."""

    on_peer_commitment: Callable[[str], None] = _ignore_commitment
    """Called when the peer's commitment arrives."""

    on_connection_change: Callable[[bool], None] = _ignore_connection
    """Called whenever the encrypted channel comes up or goes down."""

    _snapshot: ProtocolSnapshot = field(default_factory=ProtocolSnapshot, init=False)
    _started: bool = field(default=False, init=False)
    _closed: bool = field(default=False, init=False)
    _mailbox: Mailbox | None = field(default=None, init=False, repr=False)
    _my_random: str | None = field(default=None, init=False, repr=False)
    _my_message: str | None = field(default=None, init=False, repr=False)
    _my_commitment: str | None = field(default=None, init=False)
    _their_commitment: str | None = field(default=None, init=False)
    _their_message: str | None = field(default=None, init=False, repr=False)
    _their_random: str | None = field(default=None, init=False, repr=False)
    _result: asyncio.Future[VerificationResult] | None = field(default=None, init=False, repr=False)
    _closer: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _held: list[tuple[Payload, ProtocolEvent]] = field(default_factory=list, init=False, repr=False)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)
    _pending: deque[ProtocolEvent] = field(default_factory=deque, init=False, repr=False)
    _dispatching: bool = field(default=False, init=False, repr=False)

    @property
    def snapshot(self) -> ProtocolSnapshot:
        """Current state and commitment facts."""
        return self._snapshot

    @property
    def state(self) -> ProtocolState:
        """Current protocol state."""
        return self._snapshot.state

    @property
    def my_commitment(self) -> str | None:
        """Our commitment, once commit() was called."""
        return self._my_commitment

    @property
    def their_commitment(self) -> str | None:
        """The peer's commitment, once received."""
        return self._their_commitment

    @property
    def mailbox(self) -> Mailbox | None:
        """The transport, once opened."""
        return self._mailbox

    def start(self) -> None:
        """
        Draw the nonce and open the mailbox.

        Must be called from a running event loop.

        Raises:
            ProtocolError: If the session was already started.
        """
        if self._started:
            raise ProtocolError("Session already started")
        self._started = True

        result: asyncio.Future[VerificationResult] = asyncio.get_running_loop().create_future()
        # Failures are also reported through on_failure, so an unawaited
        # result must not log as an unretrieved exception.
        result.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._result = result

        logger.info("Starting commit-reveal session as %s", self.role)
        self._dispatching = True
        try:
            self._run_commands(initial_commands())
        finally:
            self._dispatching = False
        self._dispatch(ProtocolEvent.SHARED_SECRET_SET)

    def commit(self, message: str) -> str:
        """
        Commit to a message.

        May be called before or after the channel to the peer is up.

        Returns:
            Our commitment, as sent to the peer.

        Raises:
            ProtocolError: If the session is not started or already committed.
        """
        if not self._started or self._my_random is None:
            raise ProtocolError("Session not started")
        if self._my_message is not None:
            raise ProtocolError("Already committed")

        self._my_message = message
        self._my_commitment = calculate_commitment(message, self._my_random)
        logger.info("Committed: %s", self._my_commitment)
        self._dispatch(ProtocolEvent.COMMITTED)
        return self._my_commitment

    async def result(self) -> VerificationResult:
        """
        Wait for the flow to finish.

        Returns:
            The verification outcome. A cheating peer yields passed=False.

        Raises:
            ProtocolError: If the session is not started, or ends in FAIL or closed early.
        """
        if self._result is None:
            raise ProtocolError("Session not started")
        return await asyncio.shield(self._result)

    async def close(self) -> None:
        """Stop the session and its mailbox. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()

        if self._result is not None and not self._result.done():
            self._result.set_exception(ProtocolError("Session closed before completion"))

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task not in (current, self._closer)]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._closer is not None and self._closer is not current:
            await self._closer
        elif self._mailbox is not None:
            await self._mailbox.close()

    # -------------------------------------------------------------------------
    # Event dispatch
    # -------------------------------------------------------------------------

    def _dispatch(self, event: ProtocolEvent) -> None:
        self._pending.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                self._step(self._pending.popleft())
        finally:
            self._dispatching = False

    def _step(self, event: ProtocolEvent) -> None:
        if self._closed or self._snapshot.state.is_terminal:
            logger.debug("Session in %s, ignoring %s", self._snapshot.state.name, event.name)
            return

        result = transition(self._snapshot, event)
        logger.debug(
            "Commit-reveal FSM: %s -[%s]-> %s",
            result.source.state.name,
            result.event.name,
            result.target.state.name,
        )
        self._snapshot = result.target
        self._run_commands(result.commands)
        self.on_state_change(result)

    def _run_commands(self, commands: Iterable[ProtocolCommand]) -> None:
        for command in commands:
            match command:
                case GenerateRandom():
                    self._my_random = random16()
                case OpenMailbox():
                    self._open_mailbox()
                case SendCommitment():
                    assert self._my_commitment is not None
                    payload = CommitmentMessage(commitment=self._my_commitment)
                    self._spawn(self._send(payload, ProtocolEvent.COMMITMENT_SENT))
                case SendReveal():
                    assert self._my_message is not None and self._my_random is not None
                    payload = RevealMessage(message=self._my_message, random=self._my_random)
                    self._spawn(self._send(payload, ProtocolEvent.REVEAL_SENT))
                case CloseMailbox():
                    if self._mailbox is not None and self._closer is None:
                        self._closer = self._spawn(self._mailbox.close())
                case VerifyPeer():
                    self._verify_peer()
                case ReportFailure(reason=reason):
                    logger.error("Commit-reveal failed: %s", reason)
                    self.on_failure(reason)
                    if self._result is not None and not self._result.done():
                        self._result.set_exception(ProtocolError(reason))

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    def _open_mailbox(self) -> None:
        url = mailbox_url(self.relay_url, self.role, self.secret)
        mailbox = self.mailbox_factory(url, self.secret)
        mailbox.on_message = self._on_message
        mailbox.on_connect = self._on_first_connect
        mailbox.on_disconnect = self._on_disconnect
        mailbox.on_failure = self._on_mailbox_failure
        self._mailbox = mailbox
        mailbox.start()

    async def _send(self, payload: Payload, sent: ProtocolEvent) -> None:
        assert self._mailbox is not None
        try:
            await self._mailbox.send(encode_payload(payload))
        except MailboxNotEstablishedError:
            # Nothing left the machine. Send it once the channel is back.
            logger.info("Channel down, holding %s until it reconnects", payload.type)
            self._held.append((payload, sent))
            return
        except Exception as e:
            # A failed write is never retried. A commitment must go out exactly once.
            logger.error("Sending %s failed: %s", payload.type, e)
            self._dispatch(ProtocolEvent.FAILURE)
            return
        self._dispatch(sent)

    def _verify_peer(self) -> None:
        assert self._their_commitment is not None
        assert self._their_message is not None and self._their_random is not None

        recomputed = calculate_commitment(self._their_message, self._their_random)
        verification = VerificationResult(
            passed=recomputed == self._their_commitment,
            their_message=self._their_message,
            their_random=self._their_random,
            their_commitment=self._their_commitment,
        )
        if verification.passed:
            logger.info("Verification passed")
        else:
            logger.warning(
                "Verification failed: reveal hashes to %s, peer committed to %s",
                recomputed,
                self._their_commitment,
            )
        if self._result is not None and not self._result.done():
            self._result.set_result(verification)

    # -------------------------------------------------------------------------
    # Mailbox callbacks
    # -------------------------------------------------------------------------

    def _on_first_connect(self) -> None:
        # Later reconnects only flush payloads held while the channel was down.
        assert self._mailbox is not None
        self._mailbox.on_connect = self._on_reconnect
        self.on_connection_change(True)
        self._dispatch(ProtocolEvent.PEER_CONNECTION_ESTABLISHED)

    def _on_reconnect(self) -> None:
        self.on_connection_change(True)
        held, self._held = self._held, []
        for payload, sent in held:
            self._spawn(self._send(payload, sent))

    def _on_disconnect(self) -> None:
        self.on_connection_change(False)

    def _on_mailbox_failure(self, reason: str) -> None:
        logger.error("Transport failed: %s", reason)
        self._dispatch(ProtocolEvent.FAILURE)

    def _on_message(self, obj: Any) -> None:
        try:
            payload = parse_payload(obj)
        except PayloadError as e:
            logger.warning("Unexpected message from peer: %s", e)
            self._dispatch(ProtocolEvent.FAILURE)
            return

        match payload:
            case CommitmentMessage(commitment=commitment):
                # A second commitment is rejected by the state machine.
                if self._their_commitment is None:
                    self._their_commitment = commitment
                    self.on_peer_commitment(commitment)
                self._dispatch(ProtocolEvent.COMMITMENT_RECEIVED)
            case RevealMessage(message=message, random=random):
                if self._their_message is None:
                    self._their_message = message
                    self._their_random = random
                self._dispatch(ProtocolEvent.REVEAL_RECEIVED)

    # -------------------------------------------------------------------------
    # Task bookkeeping
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
