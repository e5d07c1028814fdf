"""
Commit-reveal state machine.

Two facts arrive independently: the user decides to commit, and the
encrypted channel to the peer comes up. Either may happen first. Both
orders converge on one of two send paths, and every path ends in
BOTH_COMMITTED once one commitment has gone each way.

State Machine Diagram
---------------------
::

    START --> SHARED_SECRET --(commit)--> CAN_SEND_COMMITMENT --(peer)--+
                    |                                                   |
                  (peer)                                                v
                    v                                        SEND_COMMITMENT_FIRST
                CONNECTED --(commit)-------------------------------->   |
                    |                                                 (sent)
                (received)                                              v
                    v                                             I_COMMITTED
              THEY_COMMITTED --(commit)--> SEND_COMMITMENT_SECOND       |
                                                   |               (received)
                                                 (sent)                 |
                                                   +---> BOTH_COMMITTED <+
                                                            |       |
                                                   (reveal sent)  (reveal received)
                                                            v       v
                                                   I_REVEALED     THEY_REVEALED
                                                            |       |
                                                            +-> BOTH_REVEALED

    any unmatched event --> FAIL

Join semantics
--------------
Besides the state, a snapshot records whether our commitment was sent and
whether theirs was received. After every transition, a commitment-phase
state with both facts set is promoted to BOTH_COMMITTED. This absorbs the
race where the peer's commitment lands while ours is still in flight.
Each fact may be set only once; a second one is out of order.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum, auto


class ProtocolState(Enum):
    """Commit-reveal progress."""

    START = auto()
    """Drawing our nonce."""

    SHARED_SECRET = auto()
    """Secret known, opening the mailbox."""

    CAN_SEND_COMMITMENT = auto()
    """We committed locally; the channel is not up yet."""

    CONNECTED = auto()
    """Channel up; we have not committed yet."""

    SEND_COMMITMENT_FIRST = auto()
    """Sending our commitment before having seen theirs."""

    SEND_COMMITMENT_SECOND = auto()
    """Sending our commitment after theirs arrived."""

    I_COMMITTED = auto()
    """Our commitment is out; theirs has not arrived."""

    THEY_COMMITTED = auto()
    """Their commitment arrived; we have not committed yet."""

    BOTH_COMMITTED = auto()
    """One commitment each way. Revealing is now safe."""

    I_REVEALED = auto()
    """Our reveal is out; waiting for theirs."""

    THEY_REVEALED = auto()
    """Their reveal arrived; ours is in flight."""

    BOTH_REVEALED = auto()
    """Both openings known. Their commitment can be checked."""

    FAIL = auto()
    """Terminal. The flow must be restarted from scratch."""

    @property
    def is_terminal(self) -> bool:
        """Check if the flow is over."""
        return self in (ProtocolState.BOTH_REVEALED, ProtocolState.FAIL)


class ProtocolEvent(Enum):
    """Inputs that drive the commit-reveal flow."""

    SHARED_SECRET_SET = auto()
    """Nonce drawn and shared secret known."""

    PEER_CONNECTION_ESTABLISHED = auto()
    """The mailbox reached an established session for the first time."""

    COMMITTED = auto()
    """The user chose a message and its commitment was computed."""

    COMMITMENT_SENT = auto()
    """Our commitment was handed to the mailbox."""

    COMMITMENT_RECEIVED = auto()
    """The peer's commitment arrived."""

    REVEAL_SENT = auto()
    """Our reveal was handed to the mailbox."""

    REVEAL_RECEIVED = auto()
    """The peer's reveal arrived."""

    FAILURE = auto()
    """Generic error, such as a failed send or a malformed payload."""


_COMMITMENT_PHASE = frozenset(
    {
        ProtocolState.SEND_COMMITMENT_FIRST,
        ProtocolState.SEND_COMMITMENT_SECOND,
        ProtocolState.I_COMMITTED,
        ProtocolState.THEY_COMMITTED,
    }
)
"""States the join may promote to BOTH_COMMITTED."""


@dataclass(frozen=True, slots=True)
class ProtocolSnapshot:
    """State plus the two commitment facts."""

    state: ProtocolState = ProtocolState.START

    commitment_sent: bool = False
    """Our commitment has been sent."""

    commitment_received: bool = False
    """The peer's commitment has been received."""


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GenerateRandom:
    """Draw the commitment nonce for this run."""


@dataclass(frozen=True, slots=True)
class OpenMailbox:
    """Start the session transport to the peer."""


@dataclass(frozen=True, slots=True)
class SendCommitment:
    """Send our commitment, then report COMMITMENT_SENT or FAILURE."""


@dataclass(frozen=True, slots=True)
class SendReveal:
    """Send our message and nonce, then report REVEAL_SENT or FAILURE."""


@dataclass(frozen=True, slots=True)
class CloseMailbox:
    """Tear down the session transport."""


@dataclass(frozen=True, slots=True)
class VerifyPeer:
    """Recompute the peer's commitment from its reveal and compare."""


@dataclass(frozen=True, slots=True)
class ReportFailure:
    """Tell observers the flow failed."""

    reason: str


type ProtocolCommand = (
    GenerateRandom
    | OpenMailbox
    | SendCommitment
    | SendReveal
    | CloseMailbox
    | VerifyPeer
    | ReportFailure
)
"""Any side effect the session may be asked to perform."""


@dataclass(frozen=True, slots=True)
class ProtocolTransition:
    """The outcome of feeding one event into the machine."""

    source: ProtocolSnapshot
    event: ProtocolEvent
    target: ProtocolSnapshot
    commands: tuple[ProtocolCommand, ...]


_TRANSITIONS: dict[tuple[ProtocolState, ProtocolEvent], ProtocolState] = {
    (ProtocolState.START, ProtocolEvent.SHARED_SECRET_SET): ProtocolState.SHARED_SECRET,
    (ProtocolState.SHARED_SECRET, ProtocolEvent.COMMITTED): ProtocolState.CAN_SEND_COMMITMENT,
    (
        ProtocolState.SHARED_SECRET,
        ProtocolEvent.PEER_CONNECTION_ESTABLISHED,
    ): ProtocolState.CONNECTED,
    (
        ProtocolState.CAN_SEND_COMMITMENT,
        ProtocolEvent.PEER_CONNECTION_ESTABLISHED,
    ): ProtocolState.SEND_COMMITMENT_FIRST,
    (ProtocolState.CONNECTED, ProtocolEvent.COMMITTED): ProtocolState.SEND_COMMITMENT_FIRST,
    (ProtocolState.CONNECTED, ProtocolEvent.COMMITMENT_RECEIVED): ProtocolState.THEY_COMMITTED,
    (ProtocolState.THEY_COMMITTED, ProtocolEvent.COMMITTED): ProtocolState.SEND_COMMITMENT_SECOND,
    (ProtocolState.SEND_COMMITMENT_FIRST, ProtocolEvent.COMMITMENT_SENT): ProtocolState.I_COMMITTED,
    (
        ProtocolState.SEND_COMMITMENT_FIRST,
        ProtocolEvent.COMMITMENT_RECEIVED,
    ): ProtocolState.SEND_COMMITMENT_FIRST,
    (
        ProtocolState.SEND_COMMITMENT_SECOND,
        ProtocolEvent.COMMITMENT_SENT,
    ): ProtocolState.I_COMMITTED,
    (ProtocolState.I_COMMITTED, ProtocolEvent.COMMITMENT_RECEIVED): ProtocolState.I_COMMITTED,
    (ProtocolState.BOTH_COMMITTED, ProtocolEvent.REVEAL_SENT): ProtocolState.I_REVEALED,
    (ProtocolState.BOTH_COMMITTED, ProtocolEvent.REVEAL_RECEIVED): ProtocolState.THEY_REVEALED,
    (ProtocolState.I_REVEALED, ProtocolEvent.REVEAL_RECEIVED): ProtocolState.BOTH_REVEALED,
    (ProtocolState.THEY_REVEALED, ProtocolEvent.REVEAL_SENT): ProtocolState.BOTH_REVEALED,
}
"""Nominal transitions, before the commitment join is applied."""


def initial_commands() -> tuple[ProtocolCommand, ...]:
    """Entry effects of START, run once when the session is started."""
    return (GenerateRandom(),)


def transition(snapshot: ProtocolSnapshot, event: ProtocolEvent) -> ProtocolTransition:
    """
    Compute the next snapshot and the effects of getting there.

    Args:
        snapshot: Current state and commitment facts.
        event: Event being processed.

    Returns:
        The transition, including entry commands of the new state.
    """
    state = snapshot.state

    if event is ProtocolEvent.FAILURE:
        return _fail(snapshot, event, f"Failure reported in state {state.name}")
    if event is ProtocolEvent.COMMITMENT_SENT and snapshot.commitment_sent:
        return _fail(snapshot, event, "Commitment sent twice")
    if event is ProtocolEvent.COMMITMENT_RECEIVED and snapshot.commitment_received:
        return _fail(snapshot, event, "Peer sent more than one commitment")

    target = _TRANSITIONS.get((state, event))
    if target is None:
        return _fail(snapshot, event, f"Unexpected {event.name} in state {state.name}")

    sent = snapshot.commitment_sent or event is ProtocolEvent.COMMITMENT_SENT
    received = snapshot.commitment_received or event is ProtocolEvent.COMMITMENT_RECEIVED
    if target in _COMMITMENT_PHASE and sent and received:
        target = ProtocolState.BOTH_COMMITTED

    after = ProtocolSnapshot(state=target, commitment_sent=sent, commitment_received=received)
    commands = _entry_commands(target) if target is not state else ()
    return ProtocolTransition(source=snapshot, event=event, target=after, commands=commands)


def _fail(snapshot: ProtocolSnapshot, event: ProtocolEvent, reason: str) -> ProtocolTransition:
    return ProtocolTransition(
        source=snapshot,
        event=event,
        target=replace(snapshot, state=ProtocolState.FAIL),
        commands=(CloseMailbox(), ReportFailure(reason)),
    )


def _entry_commands(target: ProtocolState) -> tuple[ProtocolCommand, ...]:
    match target:
        case ProtocolState.SHARED_SECRET:
            return (OpenMailbox(),)
        case ProtocolState.SEND_COMMITMENT_FIRST | ProtocolState.SEND_COMMITMENT_SECOND:
            return (SendCommitment(),)
        case ProtocolState.BOTH_COMMITTED:
            # The only place a reveal is ever emitted.
            return (SendReveal(),)
        case ProtocolState.BOTH_REVEALED:
            return (CloseMailbox(), VerifyPeer())
        case _:
            return ()
