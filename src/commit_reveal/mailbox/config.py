"""
Mailbox configuration.

Protocol constants and runtime configuration for the session transport.
"""

from typing import Final

from commit_reveal.types import StrictBaseModel

RECONNECT_DELAY_SECS: Final = 2.0
"""Fixed delay before re-opening a dropped relay connection. Not exponential."""

MAX_FRAME_SIZE: Final = 64 * 1024
"""Largest inbound relay frame, in characters, that the mailbox will parse."""


class MailboxConfig(StrictBaseModel):
    """Runtime configuration for a mailbox."""

    reconnect_delay_secs: float = RECONNECT_DELAY_SECS
    """Seconds to wait after a connection drops before opening a new one."""

    max_frame_size: int = MAX_FRAME_SIZE
    """Inbound frames longer than this are dropped without parsing."""
