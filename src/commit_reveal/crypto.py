"""
Cryptographic primitives for the commit-reveal protocol.

The protocol uses:
    - SHA-256 hash commitments over (message, random)
    - X25519 for ephemeral Diffie-Hellman key agreement
    - HMAC-SHA256, keyed by the shared secret, to authenticate handshakes
    - AES-256-GCM with a random 96-bit IV per message for transport

Wire format notes:
    - Public keys travel as JWK objects: {"kty": "OKP", "crv": "X25519", "x": b64url}
    - Handshake signatures are the HMAC tag over the raw 32-byte public key, hex
    - The raw X25519 output is used directly as the AES-256-GCM key
    - Ciphertext includes the 16-byte GCM tag appended

References:
    - https://datatracker.ietf.org/doc/html/rfc7748 (X25519)
    - https://datatracker.ietf.org/doc/html/rfc8037 (OKP JWK)
    - https://datatracker.ietf.org/doc/html/rfc2104 (HMAC)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Any, Final

from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .secret import SharedSecret

COMMITMENT_DELIMITER: Final = "\n"
"""Separator between message and random inside a commitment preimage."""

RANDOM_SIZE: Final = 16
"""Commitment nonce length in bytes."""

IV_SIZE: Final = 12
"""AES-GCM nonce size in bytes (96 bits)."""

SESSION_KEY_SIZE: Final = 32
"""AES-256-GCM key size in bytes."""

PUBLIC_KEY_SIZE: Final = 32
"""Raw X25519 public key size in bytes."""


class CryptoError(Exception):
    """Raised when key material or encoded values are malformed."""


@dataclass(frozen=True, slots=True)
class EncryptedMessage:
    """An AEAD ciphertext with the IV it was sealed under."""

    iv: bytes
    """Fresh 12-byte nonce."""

    ciphertext: bytes
    """Ciphertext with the 16-byte authentication tag appended."""


def calculate_commitment(message: str, random: str) -> str:
    """
    Compute the hash commitment to a message.

    The preimage is ``message + "\\n" + random`` encoded as UTF-8. Order
    matters: swapping message and random gives a different commitment.

    Args:
        message: The value being committed to.
        random: The nonce that hides it.

    Returns:
        Lowercase hex SHA-256 digest.
    """
    preimage = COMMITMENT_DELIMITER.join([message, random]).encode("utf-8")
    return hashlib.sha256(preimage).hexdigest()


def random16() -> str:
    """Generate a fresh commitment nonce as 32 hex characters."""
    return os.urandom(RANDOM_SIZE).hex()


def generate_keypair() -> x25519.X25519PrivateKey:
    """
    Generate a new ephemeral X25519 keypair.

    Every handshake attempt uses a fresh key. The public half is reachable
    through ``private_key.public_key()``.
    """
    return x25519.X25519PrivateKey.generate()


def export_public_key(public_key: x25519.X25519PublicKey) -> dict[str, str]:
    """Encode a public key as an OKP JWK."""
    x = base64.urlsafe_b64encode(public_key.public_bytes_raw()).rstrip(b"=").decode("ascii")
    return {"kty": "OKP", "crv": "X25519", "x": x}


def import_public_key(jwk: dict[str, Any]) -> x25519.X25519PublicKey:
    """
    Decode a public key from an OKP JWK.

    Raises:
        CryptoError: If the JWK is not an X25519 key or has the wrong size.
    """
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "X25519":
        raise CryptoError(f"Unsupported JWK: kty={jwk.get('kty')!r} crv={jwk.get('crv')!r}")

    x = jwk.get("x")
    if not isinstance(x, str):
        raise CryptoError("JWK has no x coordinate")
    try:
        raw = base64.urlsafe_b64decode(x + "=" * (-len(x) % 4))
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid JWK x coordinate: {e}") from e

    if len(raw) != PUBLIC_KEY_SIZE:
        raise CryptoError(f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(raw)}")
    return x25519.X25519PublicKey.from_public_bytes(raw)


def sign_public_key(secret: SharedSecret, public_key: x25519.X25519PublicKey) -> str:
    """Compute the handshake signature: HMAC-SHA256(secret, raw public key), hex."""
    return hmac.new(secret.raw, public_key.public_bytes_raw(), hashlib.sha256).hexdigest()


def verify_public_key(
    secret: SharedSecret, signature: str, public_key: x25519.X25519PublicKey
) -> bool:
    """
    Check a handshake signature.

    The comparison is constant-time over the full tag. A signature that is
    not valid hex is rejected like any other mismatch.
    """
    try:
        tag = bytes.fromhex(signature)
    except ValueError:
        return False

    expected = hmac.new(secret.raw, public_key.public_bytes_raw(), hashlib.sha256).digest()
    return hmac.compare_digest(expected, tag)


def derive_session_key(
    public_key: x25519.X25519PublicKey, private_key: x25519.X25519PrivateKey
) -> bytes:
    """
    Combine our private key with the peer's public key.

    DH(a, B) == DH(b, A), so both ends derive the same 32-byte key.
    """
    return private_key.exchange(public_key)


def encrypt_message(key: bytes, message: Any) -> EncryptedMessage:
    """
    Seal a JSON-serializable message under the session key.

    A fresh random IV is drawn for every call. Reusing an IV under the
    same GCM key would leak the keystream.
    """
    iv = os.urandom(IV_SIZE)
    plaintext = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return EncryptedMessage(iv=iv, ciphertext=AESGCM(key).encrypt(iv, plaintext, None))


def decrypt_message(key: bytes, encrypted: EncryptedMessage) -> Any:
    """
    Open a sealed message.

    Raises:
        cryptography.exceptions.InvalidTag: If the key, IV or ciphertext was altered.
        CryptoError: If the IV has the wrong size.
    """
    if len(encrypted.iv) != IV_SIZE:
        raise CryptoError(f"IV must be {IV_SIZE} bytes, got {len(encrypted.iv)}")

    plaintext = AESGCM(key).decrypt(encrypted.iv, encrypted.ciphertext, None)
    return json.loads(plaintext.decode("utf-8"))
