"""
Commit-reveal payloads.

These travel inside mailbox cryptograms, so the relay never sees them:

    {"type": "commitment", "commitment": <sha256 hex>}
    {"type": "reveal", "message": <text>, "random": <nonce>}
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter, ValidationError

from commit_reveal.types import Hash256Hex, StrictBaseModel


class PayloadError(Exception):
    """Raised when a decrypted payload is not a known protocol message."""


class CommitmentMessage(StrictBaseModel):
    """Binding, hiding commitment to a message that is not yet disclosed."""

    type: Literal["commitment"] = "commitment"

    commitment: Hash256Hex
    """SHA-256 over message and nonce."""


class RevealMessage(StrictBaseModel):
    """Opening of an earlier commitment."""

    type: Literal["reveal"] = "reveal"

    message: str
    """The committed value."""

    random: str
    """The nonce that hid it."""


type Payload = CommitmentMessage | RevealMessage
"""Any commit-reveal message."""

_PAYLOAD_ADAPTER: TypeAdapter[Payload] = TypeAdapter(
    Annotated[CommitmentMessage | RevealMessage, Field(discriminator="type")]
)


def parse_payload(obj: Any) -> Payload:
    """
    Validate a decrypted JSON value as a protocol message.

    Raises:
        PayloadError: If the value is not a commitment or reveal object.
    """
    try:
        return _PAYLOAD_ADAPTER.validate_python(obj)
    except ValidationError as e:
        raise PayloadError(f"Invalid protocol payload: {e.error_count()} error(s)") from e


def encode_payload(payload: Payload) -> dict[str, Any]:
    """Convert a protocol message into the JSON value handed to the mailbox."""
    return payload.model_dump(mode="json")
