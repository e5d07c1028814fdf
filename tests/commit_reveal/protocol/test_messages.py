"""Tests for commit-reveal payloads."""

from __future__ import annotations

import pytest

from commit_reveal.protocol.messages import (
    CommitmentMessage,
    PayloadError,
    RevealMessage,
    encode_payload,
    parse_payload,
)

COMMITMENT = "26c60a61d01db5836ca70fefd44a6a016620413c8ef5f259a6c5612d4f79d3b8"


class TestParsePayload:
    """Tests for parse_payload."""

    def test_commitment(self) -> None:
        """Commitment objects parse into CommitmentMessage."""
        payload = parse_payload({"type": "commitment", "commitment": COMMITMENT})
        assert payload == CommitmentMessage(commitment=COMMITMENT)

    def test_reveal(self) -> None:
        """Reveal objects parse into RevealMessage."""
        payload = parse_payload({"type": "reveal", "message": "hello", "random": "world"})
        assert payload == RevealMessage(message="hello", random="world")

    @pytest.mark.parametrize(
        "obj",
        [
            None,
            "commitment",
            {"type": "cheat"},
            {"type": "commitment"},
            {"type": "commitment", "commitment": "not-a-hash"},
            {"type": "commitment", "commitment": COMMITMENT.upper()},
            {"type": "reveal", "message": "hello"},
            {"type": "reveal", "message": 1, "random": "world"},
        ],
    )
    def test_rejects_invalid(self, obj: object) -> None:
        """Anything but a well-formed commitment or reveal is rejected."""
        with pytest.raises(PayloadError):
            parse_payload(obj)


class TestEncodePayload:
    """Tests for encode_payload."""

    def test_commitment(self) -> None:
        """Commitments encode with their type tag."""
        assert encode_payload(CommitmentMessage(commitment=COMMITMENT)) == {
            "type": "commitment",
            "commitment": COMMITMENT,
        }

    def test_reveal_round_trip(self) -> None:
        """Encoded reveals parse back unchanged."""
        reveal = RevealMessage(message="multi\nline", random="ab" * 16)
        assert parse_payload(encode_payload(reveal)) == reveal
