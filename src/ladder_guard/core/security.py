"""Hashing and token primitives shared by the guards."""
from __future__ import annotations

import hashlib
import hmac
import re
import secrets

TOKEN_BYTES = 32
_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def hash_key(purpose: str, identifier: str) -> str:
    """Return the store key owned by a ``(purpose, identifier)`` pair."""
    digest = hashlib.sha256(f"{purpose}_{identifier}".encode()).hexdigest()
    return f"rate_limit_{digest}"


def session_key(session_id: str) -> str:
    """Return the store key holding a session record."""
    return f"session_{session_id}"


def fingerprint(user_agent: str, accept_language: str, accept_encoding: str) -> str:
    """Hash stable client headers into a session fingerprint.

    This is a heuristic binding only. A client that replays all three headers
    verbatim produces the same fingerprint.
    """
    material = f"{user_agent}{accept_language}{accept_encoding}".encode()
    return hashlib.sha256(material).hexdigest()


def generate_token() -> str:
    """Return 256 bits of randomness as 64 lowercase hex characters."""
    return secrets.token_hex(TOKEN_BYTES)


def generate_session_id() -> str:
    """Return a fresh, URL-safe session identifier."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def is_token_shaped(value: object) -> bool:
    """Return True when ``value`` looks like a token from :func:`generate_token`."""
    return isinstance(value, str) and bool(_TOKEN_PATTERN.match(value))


def timing_safe_equals(expected: str, provided: str) -> bool:
    """Compare two strings without leaking the mismatch position."""
    return hmac.compare_digest(expected.encode(), provided.encode())


def cookie_name_for_action(action: str) -> str:
    """Return the double-submit cookie name for an action."""
    return "csrf_" + hashlib.sha256(action.encode()).hexdigest()
