"""Identifier generation for stored entities."""

from __future__ import annotations

import secrets
import time

# 9 random bytes -> 12 URL-safe characters
ID_BYTES = 9
# Deployment keys are bearer tokens handed to release clients.
KEY_BYTES = 24


def generate_id() -> str:
    """Return a short, URL-safe, random entity id."""
    return secrets.token_urlsafe(ID_BYTES)


def generate_key() -> str:
    """Return a deployment key token.

    Keys live in a separate namespace from ids and are long enough to be
    handed out publicly.
    """
    return secrets.token_urlsafe(KEY_BYTES)


def now_millis() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)
