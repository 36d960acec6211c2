"""Identity lookup seam.

Credential verification (directory bind, password hashing) belongs to the
host application. The guards only need something that turns a username and
password into an :class:`Identity` or ``None``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Protocol

from ladder_guard.models.records import Identity

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def authenticate(self, username: str, password: str) -> Identity | None: ...


class StaticIdentityProvider:
    """In-memory provider for development and tests.

    Passwords are kept as SHA-256 digests only so that they do not sit in
    memory verbatim; this is not a password storage scheme.
    """

    def __init__(self) -> None:
        self._users: dict[str, tuple[bytes, Identity]] = {}

    @staticmethod
    def _digest(password: str) -> bytes:
        return hashlib.sha256(password.encode()).digest()

    def add_user(self, identity: Identity, password: str) -> None:
        self._users[identity.username] = (self._digest(password), identity)

    def authenticate(self, username: str, password: str) -> Identity | None:
        entry = self._users.get(username)
        # Compare against a dummy digest for unknown users to keep timing flat.
        expected, identity = entry if entry else (self._digest(""), None)
        if not hmac.compare_digest(expected, self._digest(password)) or identity is None:
            logger.debug("Authentication failed for %s", username)
            return None
        return identity


_PROVIDER: IdentityProvider = StaticIdentityProvider()


def get_identity_provider() -> IdentityProvider:
    return _PROVIDER


def set_identity_provider(provider: IdentityProvider) -> None:
    global _PROVIDER
    _PROVIDER = provider
