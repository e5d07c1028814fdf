"""
Shared-secret codec and rendezvous addressing.

Both parties hold the same pre-shared key, distributed out-of-band inside
the fragment of a link. The fragment never reaches a server: browsers and
HTTP clients strip it before sending a request.

The relay needs a way to pair the two parties without learning the key.
Each party independently derives a rendezvous identifier from the key with
HKDF. The derivation is one-way, so the identifier is safe to put in a URL.

Link format::

    {origin}/bob#{base64(shared secret)}

Mailbox URL format::

    {relay_url}/{role}/mailbox/{rendezvous id}
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Final
from urllib.parse import urlsplit

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

SHARED_SECRET_SIZE: Final = 16
"""Shared secret length in bytes (a 128-bit HMAC-SHA256 key)."""

RENDEZVOUS_ID_SIZE: Final = 32
"""Rendezvous identifier length in bytes before hex encoding."""

RENDEZVOUS_SALT: Final = bytes(32)
"""Fixed all-zero HKDF salt."""

RENDEZVOUS_INFO: Final = b""
"""Fixed empty HKDF context."""


class SecretError(Exception):
    """Raised when a shared secret or share link cannot be decoded."""


class Role(StrEnum):
    """Which end of the mailbox a party occupies."""

    ALICE = "alice"
    """The party that generated the secret and shared the link."""

    BOB = "bob"
    """The party that opened the link."""


@dataclass(frozen=True, slots=True)
class SharedSecret:
    """
    Pre-shared symmetric key used only to authenticate handshakes.

    Immutable for the lifetime of a pairing. It never encrypts application
    data and is never sent to the relay.
    """

    raw: bytes = field(repr=False)
    """Raw key bytes."""

    def __post_init__(self) -> None:
        if not self.raw:
            raise SecretError("Shared secret must not be empty")

    @classmethod
    def generate(cls) -> SharedSecret:
        """Generate a fresh random shared secret."""
        return cls(os.urandom(SHARED_SECRET_SIZE))

    @classmethod
    def from_url_fragment(cls, fragment: str) -> SharedSecret:
        """
        Decode a secret from the base64 text carried in a link fragment.

        Raises:
            SecretError: If the fragment is not valid base64 or decodes to nothing.
        """
        try:
            raw = base64.b64decode(fragment.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise SecretError(f"Invalid shared secret encoding: {e}") from e
        return cls(raw)

    def to_url_fragment(self) -> str:
        """Encode the secret as standard base64 for a link fragment."""
        return base64.b64encode(self.raw).decode("ascii")

    def rendezvous_id(self) -> str:
        """
        Derive the relay addressing token.

        HKDF-SHA256 with an all-zero salt and empty info. The same secret
        always yields the same 64-character hex string.
        """
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=RENDEZVOUS_ID_SIZE,
            salt=RENDEZVOUS_SALT,
            info=RENDEZVOUS_INFO,
        )
        return hkdf.derive(self.raw).hex()


def share_link(origin: str, secret: SharedSecret) -> str:
    """Build the out-of-band link that hands the secret to Bob."""
    return f"{origin.rstrip('/')}/{Role.BOB}#{secret.to_url_fragment()}"


def parse_share_link(link: str) -> SharedSecret:
    """
    Extract the shared secret from a link produced by `share_link`.

    A bare fragment (without scheme or host) is accepted as well.

    Raises:
        SecretError: If the link carries no fragment.
    """
    if "#" not in link:
        raise SecretError("Share link has no secret fragment")

    fragment = urlsplit(link).fragment
    if not fragment:
        raise SecretError("Share link has an empty secret fragment")
    return SharedSecret.from_url_fragment(fragment)


def mailbox_url(relay_url: str, role: Role, secret: SharedSecret) -> str:
    """Compose the relay path for one party. Only the rendezvous id is included."""
    return f"{relay_url.rstrip('/')}/{role}/mailbox/{secret.rendezvous_id()}"
