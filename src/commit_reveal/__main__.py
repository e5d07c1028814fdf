"""
Commit-reveal CLI entry point.

Run the relay, or take part in a commit-reveal exchange as either party.

Usage::

    python -m commit_reveal relay --port 8910
    python -m commit_reveal alice --message heads
    python -m commit_reveal bob --link 'http://127.0.0.1:8910/bob#AAEC...' --message tails

Alice generates the shared secret and prints a link. Bob joins with it.
Both commit, exchange commitments, reveal, and check the other's reveal.

Exit status is 0 when the peer's reveal matches its commitment, 1 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from commit_reveal import config
from commit_reveal.protocol import CommitRevealSession, ProtocolError, VerificationResult
from commit_reveal.relay import RelayServer, RelayServerConfig
from commit_reveal.secret import Role, SecretError, SharedSecret, parse_share_link, share_link

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name so failures stand out in a terminal."""

    RESET = "\x1b[0m"
    YELLOW = "\x1b[38;5;220m"
    RED = "\x1b[38;5;196m"

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[38;5;244m",
        logging.INFO: "\x1b[38;5;40m",
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format a record with a colored level name."""
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)
        levelname = f"{color}{record.levelname:8}{self.RESET}"
        timestamp = self.formatTime(record, self.datefmt)
        return f"{timestamp} {levelname} {record.name}: {record.getMessage()}"


def setup_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Send logs to stderr, replacing any handler installed by an earlier call."""
    handler = logging.StreamHandler()
    if no_color:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    else:
        handler.setFormatter(ColoredFormatter(datefmt=LOG_DATEFMT))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[handler],
        force=True,
    )


async def run_relay(host: str, port: int) -> None:
    """Run the relay until interrupted."""
    server = RelayServer(RelayServerConfig(host=host, port=port))
    try:
        await server.run()
    finally:
        await server.stop()


async def run_party(
    role: Role,
    secret: SharedSecret,
    message: str,
    relay_url: str,
) -> VerificationResult | None:
    """
    Take part in one commit-reveal exchange.

    Args:
        role: Which end of the mailbox to occupy.
        secret: Shared secret, generated by Alice and handed to Bob.
        message: Value to commit to.
        relay_url: Base websocket URL of the relay.

    Returns:
        The verification outcome, or None if the exchange failed.
    """
    session = CommitRevealSession(
        role=role,
        secret=secret,
        relay_url=relay_url,
        on_peer_commitment=lambda commitment: print(f"Their commitment: {commitment}"),
        on_connection_change=lambda up: logger.info(
            "Peer channel %s", "up" if up else "down, reconnecting"
        ),
    )
    try:
        session.start()
        print(f"My commitment:    {session.commit(message)}")
        return await session.result()
    except ProtocolError as e:
        logger.error("Exchange failed: %s", e)
        return None
    finally:
        await session.close()


def print_result(result: VerificationResult | None) -> None:
    """Show the outcome of an exchange on stdout."""
    if result is None:
        print("Exchange failed")
        return

    print("Verification passed" if result.passed else "Verification failed")
    print(f"Their message:    {result.their_message}")
    print(f"Their random:     {result.their_random}")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        prog="commit-reveal",
        description="Two-party commit-reveal over an untrusted relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored logging output",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="Run the mailbox relay")
    relay.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    relay.add_argument("--port", type=int, default=8910, help="Port to bind (default: 8910)")

    alice = commands.add_parser("alice", help="Start an exchange and print the share link")
    alice.add_argument("--message", required=True, help="Value to commit to")
    alice.add_argument(
        "--relay",
        default=config.RELAY_URL,
        help=f"Relay websocket URL (default: {config.RELAY_URL})",
    )
    alice.add_argument(
        "--origin",
        default=config.SHARE_ORIGIN,
        help=f"Origin for the share link (default: {config.SHARE_ORIGIN})",
    )

    bob = commands.add_parser("bob", help="Join an exchange from a share link")
    bob.add_argument("--link", required=True, help="Share link received from Alice")
    bob.add_argument("--message", required=True, help="Value to commit to")
    bob.add_argument(
        "--relay",
        default=config.RELAY_URL,
        help=f"Relay websocket URL (default: {config.RELAY_URL})",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.no_color)

    try:
        match args.command:
            case "relay":
                asyncio.run(run_relay(args.host, args.port))
                return 0
            case "alice":
                secret = SharedSecret.generate()
                print(f"Share this link with Bob: {share_link(args.origin, secret)}")
                result = asyncio.run(run_party(Role.ALICE, secret, args.message, args.relay))
            case _:
                try:
                    secret = parse_share_link(args.link)
                except SecretError as e:
                    parser.error(str(e))
                result = asyncio.run(run_party(Role.BOB, secret, args.message, args.relay))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 1

    print_result(result)
    return 0 if result is not None and result.passed else 1


if __name__ == "__main__":
    sys.exit(main())
