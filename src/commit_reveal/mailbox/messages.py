"""
Relay wire frames.

Every frame is a JSON object with a ``type`` discriminator:

    {"type": "handshake",  "pk": <JWK>, "sig": <hex HMAC tag>}
    {"type": "cryptogram", "iv": <hex, 12 bytes>, "ct": <hex ciphertext + tag>}
    {"type": "reset"}

Handshakes and cryptograms travel between the peers. The relay itself
only ever originates ``reset``, when the other side's connection drops.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter, ValidationError

from commit_reveal.crypto import EncryptedMessage
from commit_reveal.types import HexString, IvHex, StrictBaseModel


class FrameError(Exception):
    """Raised when a relay frame is not valid JSON or not a known frame."""


class HandshakeFrame(StrictBaseModel):
    """Ephemeral public key plus its HMAC under the shared secret."""

    type: Literal["handshake"] = "handshake"

    pk: dict[str, Any]
    """Ephemeral X25519 public key as a JWK. Extra members such as ext and key_ops are allowed."""

    sig: HexString
    """HMAC-SHA256 of the raw public key, keyed by the shared secret."""


class CryptogramFrame(StrictBaseModel):
    """An application payload sealed under the session key."""

    type: Literal["cryptogram"] = "cryptogram"

    iv: IvHex
    """Per-message AES-GCM nonce."""

    ct: HexString
    """Ciphertext with the authentication tag appended."""

    @classmethod
    def seal(cls, encrypted: EncryptedMessage) -> CryptogramFrame:
        """Wrap an encrypted message for the wire."""
        return cls(iv=encrypted.iv.hex(), ct=encrypted.ciphertext.hex())

    def unseal(self) -> EncryptedMessage:
        """Recover the raw IV and ciphertext."""
        return EncryptedMessage(iv=bytes.fromhex(self.iv), ciphertext=bytes.fromhex(self.ct))


class ResetFrame(StrictBaseModel):
    """Relay notice that the peer's connection went away."""

    type: Literal["reset"] = "reset"


type Frame = HandshakeFrame | CryptogramFrame | ResetFrame
"""Any frame that may cross the relay."""

_FRAME_ADAPTER: TypeAdapter[Frame] = TypeAdapter(
    Annotated[HandshakeFrame | CryptogramFrame | ResetFrame, Field(discriminator="type")]
)


def parse_frame(raw: str | bytes) -> Frame:
    """
    Decode a frame received from the relay.

    Raises:
        FrameError: If the input is not JSON or does not match a known frame.
    """
    try:
        return _FRAME_ADAPTER.validate_json(raw)
    except ValidationError as e:
        raise FrameError(f"Invalid relay frame: {e.error_count()} error(s)") from e


def encode_frame(frame: Frame) -> str:
    """Serialize a frame for the relay."""
    return frame.model_dump_json()
