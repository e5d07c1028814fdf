"""
Two-party commit-reveal over a mailbox.

Each party commits to a message with SHA-256 over the message and a fresh
nonce, exchanges commitments, then reveals. Neither can change its message
after seeing the other's, and neither learns the other's message before
both have committed.
"""

from .fsm import ProtocolEvent, ProtocolSnapshot, ProtocolState, ProtocolTransition
from .messages import (
    CommitmentMessage,
    Payload,
    PayloadError,
    RevealMessage,
    encode_payload,
    parse_payload,
)
from .session import CommitRevealSession, MailboxFactory, ProtocolError, VerificationResult

__all__ = [
    # State machine
    "ProtocolEvent",
    "ProtocolSnapshot",
    "ProtocolState",
    "ProtocolTransition",
    # Payloads
    "CommitmentMessage",
    "Payload",
    "PayloadError",
    "RevealMessage",
    "encode_payload",
    "parse_payload",
    # Engine
    "CommitRevealSession",
    "MailboxFactory",
    "ProtocolError",
    "VerificationResult",
]
