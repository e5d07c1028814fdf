"""Hex-encoded string types shared by the wire formats."""

from typing import Annotated

from pydantic import Field

HexString = Annotated[str, Field(pattern=r"^(?:[0-9a-f]{2})*$")]
"""Lowercase, even-length hexadecimal string."""

Hash256Hex = Annotated[str, Field(pattern=r"^[0-9a-f]{64}$")]
"""A 32-byte digest as 64 lowercase hex characters."""

IvHex = Annotated[str, Field(pattern=r"^[0-9a-f]{24}$")]
"""A 96-bit AEAD nonce as 24 lowercase hex characters."""
