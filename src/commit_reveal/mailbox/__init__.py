"""
Session transport ("mailbox") over an untrusted relay.

Two parties who share a secret meet at the same relay mailbox. Each sends
an ephemeral X25519 public key signed with the secret:

    -> handshake {pk, sig}
    <- handshake {pk, sig}

After verifying the peer's signature both derive the same AES-256-GCM key
and exchange sealed JSON payloads. Connection drops and relay resets
restart the handshake with fresh keys.
"""

from .config import MAX_FRAME_SIZE, RECONNECT_DELAY_SECS, MailboxConfig
from .connection import Connector, RelayConnection, WebSocketConnection, WebSocketConnector
from .fsm import MailboxEvent, MailboxState, Transition
from .mailbox import Mailbox, MailboxClosedError, MailboxError, MailboxNotEstablishedError
from .messages import (
    CryptogramFrame,
    Frame,
    FrameError,
    HandshakeFrame,
    ResetFrame,
    encode_frame,
    parse_frame,
)

__all__ = [
    # Configuration
    "MAX_FRAME_SIZE",
    "RECONNECT_DELAY_SECS",
    "MailboxConfig",
    # Connection seam
    "Connector",
    "RelayConnection",
    "WebSocketConnection",
    "WebSocketConnector",
    # State machine
    "MailboxEvent",
    "MailboxState",
    "Transition",
    # Engine
    "Mailbox",
    "MailboxError",
    "MailboxClosedError",
    "MailboxNotEstablishedError",
    # Frames
    "CryptogramFrame",
    "Frame",
    "FrameError",
    "HandshakeFrame",
    "ResetFrame",
    "encode_frame",
    "parse_frame",
]
