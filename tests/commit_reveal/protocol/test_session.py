"""End-to-end tests for commit-reveal sessions over an in-memory relay."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from commit_reveal.crypto import calculate_commitment
from commit_reveal.mailbox import Mailbox, MailboxConfig, MailboxState
from commit_reveal.protocol import (
    CommitRevealSession,
    ProtocolError,
    ProtocolState,
    ProtocolTransition,
)
from commit_reveal.secret import Role, SharedSecret, mailbox_url
from tests.commit_reveal.helpers import FAST_RECONNECT_SECS, MemoryRelay, wait_until

RELAY_URL = "ws://relay.test"


class FailingMailbox(Mailbox):
    """Mailbox whose sends always fail once established."""

    async def send(self, payload: Any) -> None:
        raise ConnectionResetError("relay went away")


class Harness:
    """Builds sessions and raw mailboxes that share one in-memory relay."""

    def __init__(self) -> None:
        """Start with a fresh relay and secret."""
        self.relay = MemoryRelay()
        self.secret = SharedSecret.generate()
        self._sessions: list[CommitRevealSession] = []
        self._mailboxes: list[Mailbox] = []

    def mailbox_factory(
        self, cls: type[Mailbox] = Mailbox
    ) -> Callable[[str, SharedSecret], Mailbox]:
        """Factory building mailboxes of the given class on the relay."""

        def build(url: str, secret: SharedSecret) -> Mailbox:
            return cls(
                url,
                secret,
                connector=self.relay.connector(),
                config=MailboxConfig(reconnect_delay_secs=FAST_RECONNECT_SECS),
            )

        return build

    def session(
        self, role: Role, cls: type[Mailbox] = Mailbox, **kwargs: Any
    ) -> CommitRevealSession:
        """Create and start a session for a role."""
        session = CommitRevealSession(
            role,
            self.secret,
            relay_url=RELAY_URL,
            mailbox_factory=self.mailbox_factory(cls),
            **kwargs,
        )
        self._sessions.append(session)
        session.start()
        return session

    def raw_mailbox(self, role: Role, received: list[Any]) -> Mailbox:
        """Start a bare mailbox for a role that records what it receives."""
        mailbox = self.mailbox_factory()(mailbox_url(RELAY_URL, role, self.secret), self.secret)
        mailbox.on_message = received.append
        self._mailboxes.append(mailbox)
        mailbox.start()
        return mailbox

    async def close(self) -> None:
        """Close everything that was started."""
        for session in self._sessions:
            await session.close()
        for mailbox in self._mailboxes:
            await mailbox.close()


@pytest.fixture
async def harness() -> AsyncIterator[Harness]:
    """Harness that is torn down after the test."""
    h = Harness()
    try:
        yield h
    finally:
        await h.close()


class TestHonestExchange:
    """Tests for two honest parties."""

    @pytest.mark.anyio
    async def test_commit_before_connect(self, harness: Harness) -> None:
        """Both parties commit immediately and both verify."""
        alice = harness.session(Role.ALICE)
        bob = harness.session(Role.BOB)
        alice_commitment = alice.commit("heads")
        bob_commitment = bob.commit("tails")

        alice_result = await alice.result()
        bob_result = await bob.result()

        assert alice_result.passed
        assert alice_result.their_message == "tails"
        assert alice_result.their_commitment == bob_commitment
        assert bob_result.passed
        assert bob_result.their_message == "heads"
        assert bob_result.their_commitment == alice_commitment
        assert alice.state is ProtocolState.BOTH_REVEALED
        assert bob.state is ProtocolState.BOTH_REVEALED

    @pytest.mark.anyio
    async def test_commit_after_connect(self, harness: Harness) -> None:
        """Committing once the channel is up works on both sides."""
        alice = harness.session(Role.ALICE)
        bob = harness.session(Role.BOB)
        await wait_until(lambda: alice.state is ProtocolState.CONNECTED)
        await wait_until(lambda: bob.state is ProtocolState.CONNECTED)

        alice.commit("left")
        bob.commit("right")

        assert (await alice.result()).their_message == "right"
        assert (await bob.result()).their_message == "left"

    @pytest.mark.anyio
    async def test_one_party_commits_late(self, harness: Harness) -> None:
        """The second committer receives the first commitment before committing."""
        alice = harness.session(Role.ALICE)
        bob = harness.session(Role.BOB)
        alice.commit("early")
        await wait_until(lambda: bob.state is ProtocolState.THEY_COMMITTED)
        assert bob.their_commitment == alice.my_commitment

        bob.commit("late")
        assert (await alice.result()).passed
        assert (await bob.result()).passed

    @pytest.mark.anyio
    async def test_commitment_matches_reveal(self, harness: Harness) -> None:
        """The revealed nonce reproduces the commitment the peer sent."""
        alice = harness.session(Role.ALICE)
        bob = harness.session(Role.BOB)
        alice.commit("heads")
        bob.commit("tails")

        result = await bob.result()
        assert calculate_commitment(result.their_message, result.their_random) == (
            alice.my_commitment
        )
        assert len(result.their_random) == 32

    @pytest.mark.anyio
    async def test_mailbox_closed_after_verification(self, harness: Harness) -> None:
        """Reaching BOTH_REVEALED closes the transport."""
        alice = harness.session(Role.ALICE)
        bob = harness.session(Role.BOB)
        alice.commit("a")
        bob.commit("b")
        await alice.result()
        await bob.result()

        assert alice.mailbox is not None and bob.mailbox is not None
        await wait_until(lambda: alice.mailbox.is_closed and bob.mailbox.is_closed)


class TestCallbacks:
    """Tests for session observers."""

    @pytest.mark.anyio
    async def test_observers_called(self, harness: Harness) -> None:
        """Connection, peer commitment and transition observers all fire."""
        connections: list[bool] = []
        peer_commitments: list[str] = []
        transitions: list[ProtocolTransition] = []
        alice = harness.session(
            Role.ALICE,
            on_connection_change=connections.append,
            on_peer_commitment=peer_commitments.append,
            on_state_change=transitions.append,
        )
        bob = harness.session(Role.BOB)
        alice.commit("heads")
        bob_commitment = bob.commit("tails")
        await alice.result()

        assert connections[0] is True
        assert peer_commitments == [bob_commitment]
        assert transitions[0].target.state is ProtocolState.SHARED_SECRET
        assert transitions[-1].target.state is ProtocolState.BOTH_REVEALED
        for before, after in zip(transitions, transitions[1:], strict=False):
            assert before.target == after.source


class TestCheating:
    """Tests against a peer that does not follow the protocol."""

    @pytest.mark.anyio
    async def test_reveal_mismatch_fails_verification(self, harness: Harness) -> None:
        """A reveal that does not hash to the peer's commitment yields passed=False."""
        received: list[Any] = []
        bob = harness.raw_mailbox(Role.BOB, received)
        alice = harness.session(Role.ALICE)
        alice.commit("heads")

        await wait_until(lambda: bob.is_established)
        committed = calculate_commitment("heads", "00" * 16)
        await bob.send({"type": "commitment", "commitment": committed})
        await wait_until(lambda: any(msg.get("type") == "reveal" for msg in received))
        await bob.send({"type": "reveal", "message": "tails", "random": "00" * 16})

        result = await alice.result()
        assert not result.passed
        assert result.their_message == "tails"
        assert result.their_commitment == committed
        assert alice.state is ProtocolState.BOTH_REVEALED

    @pytest.mark.anyio
    async def test_early_reveal_fails(self, harness: Harness) -> None:
        """A reveal before both commitments ends the flow in FAIL."""
        received: list[Any] = []
        bob = harness.raw_mailbox(Role.BOB, received)
        failures: list[str] = []
        alice = harness.session(Role.ALICE, on_failure=failures.append)

        await wait_until(lambda: bob.is_established)
        await bob.send({"type": "reveal", "message": "tails", "random": "00" * 16})

        with pytest.raises(ProtocolError):
            await alice.result()
        assert alice.state is ProtocolState.FAIL
        assert len(failures) == 1

    @pytest.mark.anyio
    async def test_invalid_payload_fails(self, harness: Harness) -> None:
        """An unknown payload type ends the flow in FAIL and closes the mailbox."""
        received: list[Any] = []
        bob = harness.raw_mailbox(Role.BOB, received)
        alice = harness.session(Role.ALICE)

        await wait_until(lambda: bob.is_established)
        await bob.send({"type": "cheat"})

        with pytest.raises(ProtocolError):
            await alice.result()
        assert alice.state is ProtocolState.FAIL
        assert alice.mailbox is not None
        await wait_until(lambda: alice.mailbox.is_closed)

    @pytest.mark.anyio
    async def test_second_commitment_fails(self, harness: Harness) -> None:
        """A peer that commits twice is rejected, keeping its first commitment."""
        received: list[Any] = []
        bob = harness.raw_mailbox(Role.BOB, received)
        peer_commitments: list[str] = []
        alice = harness.session(Role.ALICE, on_peer_commitment=peer_commitments.append)

        await wait_until(lambda: bob.is_established)
        first = calculate_commitment("one", "00" * 16)
        await bob.send({"type": "commitment", "commitment": first})
        await bob.send({"type": "commitment", "commitment": calculate_commitment("two", "")})

        with pytest.raises(ProtocolError, match="more than one commitment"):
            await alice.result()
        assert alice.their_commitment == first
        assert peer_commitments == [first]


class TestReconnect:
    """Tests for payloads sent while the channel is down."""

    @pytest.mark.anyio
    async def test_commit_while_peer_away(self, harness: Harness) -> None:
        """Commitments made while the channel is down go out once it is back."""
        alice = harness.session(Role.ALICE)
        bob = harness.session(Role.BOB)
        await wait_until(
            lambda: alice.state is ProtocolState.CONNECTED and bob.state is ProtocolState.CONNECTED
        )

        # Keep Bob away until both commitments are made.
        harness.relay.refuse.add(Role.BOB)
        harness.relay.drop(Role.BOB)
        assert alice.mailbox is not None
        await wait_until(lambda: alice.mailbox.state is MailboxState.CONNECTED)

        alice_commitment = alice.commit("heads")
        await asyncio.sleep(FAST_RECONNECT_SECS * 2)
        assert alice.state is ProtocolState.SEND_COMMITMENT_FIRST

        bob_commitment = bob.commit("tails")
        harness.relay.refuse.discard(Role.BOB)

        alice_result = await alice.result()
        bob_result = await bob.result()
        assert alice_result.passed and alice_result.their_commitment == bob_commitment
        assert bob_result.passed and bob_result.their_commitment == alice_commitment

    @pytest.mark.anyio
    async def test_disconnect_reported(self, harness: Harness) -> None:
        """Losing and regaining the channel is visible to the observer."""
        connections: list[bool] = []
        alice = harness.session(Role.ALICE, on_connection_change=connections.append)
        harness.session(Role.BOB)
        await wait_until(lambda: alice.state is ProtocolState.CONNECTED)

        harness.relay.drop(Role.BOB)
        await wait_until(lambda: connections[-2:] == [False, True])
        assert alice.state is ProtocolState.CONNECTED


class TestMisuse:
    """Tests for API misuse and early termination."""

    def test_commit_before_start(self) -> None:
        """Committing requires a started session."""
        session = CommitRevealSession(Role.ALICE, SharedSecret.generate())
        with pytest.raises(ProtocolError, match="not started"):
            session.commit("heads")

    @pytest.mark.anyio
    async def test_result_before_start(self) -> None:
        """There is no result to wait for before start()."""
        session = CommitRevealSession(Role.ALICE, SharedSecret.generate())
        with pytest.raises(ProtocolError, match="not started"):
            await session.result()

    @pytest.mark.anyio
    async def test_start_twice(self, harness: Harness) -> None:
        """A session is single-use."""
        alice = harness.session(Role.ALICE)
        with pytest.raises(ProtocolError, match="already started"):
            alice.start()

    @pytest.mark.anyio
    async def test_commit_twice(self, harness: Harness) -> None:
        """A second commit is refused and the first commitment stands."""
        alice = harness.session(Role.ALICE)
        commitment = alice.commit("heads")
        with pytest.raises(ProtocolError, match="Already committed"):
            alice.commit("tails")
        assert alice.my_commitment == commitment

    @pytest.mark.anyio
    async def test_close_before_completion(self, harness: Harness) -> None:
        """Closing early fails the pending result and closes the mailbox."""
        alice = harness.session(Role.ALICE)
        alice.commit("heads")
        await alice.close()

        with pytest.raises(ProtocolError, match="closed before completion"):
            await alice.result()
        assert alice.mailbox is not None
        assert alice.mailbox.is_closed

    @pytest.mark.anyio
    async def test_close_twice(self, harness: Harness) -> None:
        """Closing again is harmless."""
        alice = harness.session(Role.ALICE)
        await alice.close()
        await alice.close()

    @pytest.mark.anyio
    async def test_send_failure_fails_session(self, harness: Harness) -> None:
        """A commitment that cannot be sent is not retried. The flow fails."""
        failures: list[str] = []
        alice = harness.session(Role.ALICE, cls=FailingMailbox, on_failure=failures.append)
        harness.session(Role.BOB)
        alice.commit("heads")

        with pytest.raises(ProtocolError):
            await alice.result()
        assert alice.state is ProtocolState.FAIL
        assert len(failures) == 1
