"""Pytest configuration and shared fixtures."""

import os

from hypothesis import settings

# Keep the CLI and session defaults pointed at a local relay.
os.environ.setdefault("COMMIT_REVEAL_RELAY_URL", "ws://127.0.0.1:8910")

# Create a profile named "no_deadline" with deadline disabled.
settings.register_profile("no_deadline", deadline=None)
settings.load_profile("no_deadline")
