"""Test helpers for commit-reveal tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from cryptography.hazmat.primitives.asymmetric import x25519

from commit_reveal.crypto import export_public_key, sign_public_key
from commit_reveal.mailbox.messages import HandshakeFrame, encode_frame
from commit_reveal.secret import SharedSecret

from .relay import MemoryConnection, MemoryConnector, MemoryRelay

FAST_RECONNECT_SECS = 0.05
"""Reconnect delay used in tests so retries happen quickly."""


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """
    Poll until the predicate holds.

    Raises:
        TimeoutError: If it does not hold within the timeout.
    """
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def handshake_frame(secret: SharedSecret, private_key: x25519.X25519PrivateKey) -> str:
    """Encode a handshake for a key, signed under a secret."""
    public_key = private_key.public_key()
    frame = HandshakeFrame(
        pk=export_public_key(public_key),
        sig=sign_public_key(secret, public_key),
    )
    return encode_frame(frame)


__all__ = [
    "FAST_RECONNECT_SECS",
    "MemoryConnection",
    "MemoryConnector",
    "MemoryRelay",
    "handshake_frame",
    "wait_until",
]
