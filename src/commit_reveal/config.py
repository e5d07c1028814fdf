"""
Global configuration for the commit-reveal client and relay.

This module contains environment-specific settings that apply across all packages.
"""

import os
from urllib.parse import urlsplit

_SUPPORTED_RELAY_SCHEMES: list[str] = ["ws", "wss"]

RELAY_URL = os.environ.get("COMMIT_REVEAL_RELAY_URL", "ws://127.0.0.1:8910").rstrip("/")
"""Base websocket URL of the relay. Defaults to a relay on localhost."""

if urlsplit(RELAY_URL).scheme not in _SUPPORTED_RELAY_SCHEMES:
    raise ValueError(
        f"Invalid COMMIT_REVEAL_RELAY_URL environment variable: '{RELAY_URL}'. "
        f"Supported schemes: {_SUPPORTED_RELAY_SCHEMES}"
    )

SHARE_ORIGIN = os.environ.get("COMMIT_REVEAL_SHARE_ORIGIN", "http://127.0.0.1:8910").rstrip("/")
"""Origin used when printing share links."""
