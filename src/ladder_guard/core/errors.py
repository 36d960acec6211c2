"""Error taxonomy for the guard layer."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from fastapi import status

if TYPE_CHECKING:  # pragma: no cover
    from ladder_guard.models.records import BlockRecord, RateLimitInfo


class GuardError(Exception):
    """Base exception carrying an HTTP status and a machine-readable code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "guard_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class StoreUnavailable(GuardError):
    """The key-value store could not be reached or returned garbage."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "STORE_UNAVAILABLE"

    def __init__(self, backend: str, detail: str = "store operation failed") -> None:
        self.backend = backend
        super().__init__(f"{backend} store unavailable: {detail}")


class StoreContention(StoreUnavailable):
    """Compare-and-swap retries ran out because other writers kept winning.

    The store is reachable, so rate decisions treat this as a rejection
    rather than failing open.
    """

    error_code = "STORE_CONTENTION"


class RateLimitExceeded(GuardError):
    """Caller exceeded the configured request budget."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, purpose: str, info: RateLimitInfo) -> None:
        self.purpose = purpose
        self.info = info
        super().__init__("Too many requests. Please try again later.")


class IdentifierBlocked(GuardError):
    """Identifier is on the block list until ``block.blocked_until``."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "IDENTIFIER_BLOCKED"

    def __init__(self, block: BlockRecord, now: float) -> None:
        self.block = block
        self.retry_after = max(0, int(block.blocked_until - now + 0.999))
        super().__init__("Too many requests. Please try again later.")


class AccountLocked(IdentifierBlocked):
    """Login lockout for an identity."""

    error_code = "ACCOUNT_LOCKED"


class InvalidOrExpiredCsrfToken(GuardError):
    """CSRF token missing, expired, replayed or bound to another client."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "CSRF_TOKEN_INVALID"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__("CSRF token validation failed")


class SessionInvalidReason(str, Enum):
    """Why a session was torn down."""

    TIMEOUT = "timeout"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    LOGGED_OUT = "logged_out"
    STORE_UNAVAILABLE = "store_unavailable"


class SessionInvalid(GuardError):
    """Session cannot be used; the client must re-authenticate."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "SESSION_INVALID"

    def __init__(self, reason: SessionInvalidReason) -> None:
        self.reason = reason
        super().__init__("Your session has expired. Please sign in again.")


__all__ = [
    "AccountLocked",
    "GuardError",
    "IdentifierBlocked",
    "InvalidOrExpiredCsrfToken",
    "RateLimitExceeded",
    "SessionInvalid",
    "SessionInvalidReason",
    "StoreContention",
    "StoreUnavailable",
]
