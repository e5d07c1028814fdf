"""Two-party commit-reveal protocol over an authenticated, end-to-end encrypted relay."""
