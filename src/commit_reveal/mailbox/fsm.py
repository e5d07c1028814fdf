"""
Mailbox state machine.

The transport is a deterministic lookup table from (state, event) to the
next state. Side effects are not performed here. Each transition returns
the list of commands the owner must execute, so the table can be tested
without sockets, timers or keys.

State Machine Diagram
---------------------
::

    START --> KEYED --> CONNECTED --> HANDSHAKE_RECEIVED --> ESTABLISHED
                          ^   |             |    |               |  |
                          |   +-------------+----+---------------+  |
                          |   |  (close)               (reset)      |
                          |   v                                     |
                        RECONNECTING <------------------------------+

    HANDSHAKE_RECEIVED --(verification failed)--> FAILED
    any unmatched event ------------------------> FAILED

Transitions
-----------
START
    - KEY_GENERATED -> KEYED
    - KEY_GENERATION_FAILED -> FAILED

KEYED
    - CONNECTION_OPENED -> CONNECTED
    - CONNECTION_CLOSED -> KEYED (open again after the reconnect delay)

CONNECTED
    - HANDSHAKE_RECEIVED -> HANDSHAKE_RECEIVED
    - RESET -> CONNECTED (send a new handshake)
    - CONNECTION_CLOSED -> RECONNECTING

HANDSHAKE_RECEIVED
    - SESSION_ESTABLISHED -> ESTABLISHED
    - VERIFICATION_FAILED -> FAILED (never retried)
    - RESET -> CONNECTED
    - CONNECTION_CLOSED -> RECONNECTING

ESTABLISHED
    - RESET -> CONNECTED (session key invalidated)
    - HANDSHAKE_RECEIVED -> HANDSHAKE_RECEIVED (rekey without closing)
    - CONNECTION_CLOSED -> RECONNECTING

RECONNECTING
    - CONNECTION_OPENED -> CONNECTED
    - CONNECTION_CLOSED -> RECONNECTING (reopen attempt failed, wait and retry)
    - RESET -> RECONNECTING (absorbed, no effects)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto

from .config import RECONNECT_DELAY_SECS


class MailboxState(Enum):
    """Session transport states."""

    START = auto()
    """Generating the first ephemeral keypair."""

    KEYED = auto()
    """Keypair ready, opening the relay connection."""

    CONNECTED = auto()
    """Relay connection open, local handshake sent, waiting for the peer's."""

    HANDSHAKE_RECEIVED = auto()
    """Peer handshake in hand, verifying its signature and deriving the key."""

    ESTABLISHED = auto()
    """Session key derived. Encrypted payloads may flow in both directions."""

    RECONNECTING = auto()
    """Connection lost. Waiting out the fixed delay before reopening."""

    FAILED = auto()
    """Terminal. Key generation or handshake authentication failed."""

    @property
    def is_terminal(self) -> bool:
        """Check if no event can move the machine out of this state."""
        return self is MailboxState.FAILED


class MailboxEvent(Enum):
    """Inputs that drive the session transport."""

    KEY_GENERATED = auto()
    """Ephemeral DH keypair generated."""

    KEY_GENERATION_FAILED = auto()
    """Ephemeral DH keypair generation raised."""

    CONNECTION_OPENED = auto()
    """Relay connection opened."""

    CONNECTION_CLOSED = auto()
    """Relay connection closed, errored, or could not be opened."""

    HANDSHAKE_RECEIVED = auto()
    """A handshake frame arrived from the peer."""

    SESSION_ESTABLISHED = auto()
    """Peer signature verified and session key derived."""

    VERIFICATION_FAILED = auto()
    """Peer signature did not verify under the shared secret."""

    RESET = auto()
    """Relay reported that the peer disconnected."""


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GenerateKeyPair:
    """Create a fresh ephemeral keypair, then report KEY_GENERATED or KEY_GENERATION_FAILED."""


@dataclass(frozen=True, slots=True)
class OpenConnection:
    """Open a new relay connection after `delay` seconds."""

    delay: float = 0.0


@dataclass(frozen=True, slots=True)
class DropConnection:
    """Detach and close the current connection handle, if any."""


@dataclass(frozen=True, slots=True)
class SendHandshake:
    """
    Send our public key and its signature.

    When `rotate_key` is set, a fresh ephemeral keypair replaces the one
    already advertised before signing.
    """

    rotate_key: bool = False


@dataclass(frozen=True, slots=True)
class DeriveSessionKey:
    """Verify the stored peer handshake and derive the session key if valid."""


@dataclass(frozen=True, slots=True)
class InvalidateSessionKey:
    """Forget the session key of the epoch being left."""


@dataclass(frozen=True, slots=True)
class NotifyConnected:
    """Tell observers an encrypted channel is usable."""


@dataclass(frozen=True, slots=True)
class NotifyDisconnected:
    """Tell observers the encrypted channel is no longer usable."""


@dataclass(frozen=True, slots=True)
class ReportFailure:
    """Tell observers the transport failed for good."""

    reason: str


type MailboxCommand = (
    GenerateKeyPair
    | OpenConnection
    | DropConnection
    | SendHandshake
    | DeriveSessionKey
    | InvalidateSessionKey
    | NotifyConnected
    | NotifyDisconnected
    | ReportFailure
)
"""Any side effect the mailbox owner may be asked to perform."""


@dataclass(frozen=True, slots=True)
class Transition:
    """The outcome of feeding one event into the machine."""

    source: MailboxState
    event: MailboxEvent
    target: MailboxState
    commands: tuple[MailboxCommand, ...]
    """Exit effects of `source` followed by entry effects of `target`."""


_TRANSITIONS: dict[tuple[MailboxState, MailboxEvent], MailboxState] = {
    (MailboxState.START, MailboxEvent.KEY_GENERATED): MailboxState.KEYED,
    (MailboxState.START, MailboxEvent.KEY_GENERATION_FAILED): MailboxState.FAILED,
    (MailboxState.KEYED, MailboxEvent.CONNECTION_OPENED): MailboxState.CONNECTED,
    (MailboxState.KEYED, MailboxEvent.CONNECTION_CLOSED): MailboxState.KEYED,
    (MailboxState.CONNECTED, MailboxEvent.HANDSHAKE_RECEIVED): MailboxState.HANDSHAKE_RECEIVED,
    (MailboxState.CONNECTED, MailboxEvent.RESET): MailboxState.CONNECTED,
    (MailboxState.CONNECTED, MailboxEvent.CONNECTION_CLOSED): MailboxState.RECONNECTING,
    (MailboxState.HANDSHAKE_RECEIVED, MailboxEvent.SESSION_ESTABLISHED): MailboxState.ESTABLISHED,
    (MailboxState.HANDSHAKE_RECEIVED, MailboxEvent.VERIFICATION_FAILED): MailboxState.FAILED,
    (MailboxState.HANDSHAKE_RECEIVED, MailboxEvent.RESET): MailboxState.CONNECTED,
    (MailboxState.HANDSHAKE_RECEIVED, MailboxEvent.CONNECTION_CLOSED): MailboxState.RECONNECTING,
    (MailboxState.ESTABLISHED, MailboxEvent.RESET): MailboxState.CONNECTED,
    (MailboxState.ESTABLISHED, MailboxEvent.HANDSHAKE_RECEIVED): MailboxState.HANDSHAKE_RECEIVED,
    (MailboxState.ESTABLISHED, MailboxEvent.CONNECTION_CLOSED): MailboxState.RECONNECTING,
    (MailboxState.RECONNECTING, MailboxEvent.CONNECTION_OPENED): MailboxState.CONNECTED,
    (MailboxState.RECONNECTING, MailboxEvent.RESET): MailboxState.RECONNECTING,
    (MailboxState.RECONNECTING, MailboxEvent.CONNECTION_CLOSED): MailboxState.RECONNECTING,
}
"""Valid transitions of the session transport."""


def initial_commands() -> tuple[MailboxCommand, ...]:
    """Entry effects of START, run once when the mailbox is started."""
    return (GenerateKeyPair(),)


def transition(
    state: MailboxState,
    event: MailboxEvent,
    *,
    reconnect_delay_secs: float = RECONNECT_DELAY_SECS,
) -> Transition:
    """
    Look up the next state and the effects of getting there.

    An event with no entry in the table is a protocol error and leads to
    FAILED. Callers must not feed events into a terminal state.

    Args:
        state: Current state.
        event: Event being processed.
        reconnect_delay_secs: Delay attached to reopen commands.

    Returns:
        The transition, including exit and entry commands.
    """
    target = _TRANSITIONS.get((state, event))
    if target is None:
        reason = f"Unexpected {event.name} in state {state.name}"
        return Transition(
            source=state,
            event=event,
            target=MailboxState.FAILED,
            commands=(*_exit_commands(state), DropConnection(), ReportFailure(reason)),
        )

    # A reset while reconnecting carries no new information. A close here
    # means the reopen attempt failed, so the entry action runs again.
    if state is MailboxState.RECONNECTING and event is MailboxEvent.RESET:
        return Transition(source=state, event=event, target=target, commands=())

    commands = (
        *_exit_commands(state),
        *_entry_commands(state, event, target, reconnect_delay_secs),
    )
    return Transition(source=state, event=event, target=target, commands=commands)


def _exit_commands(state: MailboxState) -> tuple[MailboxCommand, ...]:
    if state is MailboxState.ESTABLISHED:
        return (NotifyDisconnected(), InvalidateSessionKey())
    return ()


def _entry_commands(
    source: MailboxState,
    event: MailboxEvent,
    target: MailboxState,
    reconnect_delay_secs: float,
) -> tuple[MailboxCommand, ...]:
    match target:
        case MailboxState.KEYED:
            # A failed open while KEYED retries, but not in a tight loop.
            delay = reconnect_delay_secs if source is MailboxState.KEYED else 0.0
            return (OpenConnection(delay=delay),)
        case MailboxState.CONNECTED:
            # The key generated in START has not been advertised yet. Any
            # later handshake attempt gets a fresh one.
            return (SendHandshake(rotate_key=source is not MailboxState.KEYED),)
        case MailboxState.HANDSHAKE_RECEIVED:
            return (DeriveSessionKey(),)
        case MailboxState.ESTABLISHED:
            return (NotifyConnected(),)
        case MailboxState.RECONNECTING:
            return (DropConnection(), OpenConnection(delay=reconnect_delay_secs))
        case MailboxState.FAILED:
            return (DropConnection(), ReportFailure(_failure_reason(event)))
        case _:
            return ()


def _failure_reason(event: MailboxEvent) -> str:
    if event is MailboxEvent.VERIFICATION_FAILED:
        return "Peer handshake signature did not verify"
    if event is MailboxEvent.KEY_GENERATION_FAILED:
        return "Ephemeral key generation failed"
    return f"Transport failed on {event.name}"
