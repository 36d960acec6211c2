"""Failed-attempt counting and lockout for any sensitive action."""

from __future__ import annotations

import logging
from typing import Any

from ladder_guard.core.errors import StoreUnavailable
from ladder_guard.core.security import hash_key
from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.models.records import LockoutRecord
from ladder_guard.services.events import SecurityEvent, SecurityEventType, emit_safely
from ladder_guard.services.rate_limiter import RateLimiter
from ladder_guard.store.base import UNCHANGED

logger = logging.getLogger(__name__)


class LockoutService:
    """Count failures per ``(purpose, identifier)`` and block at the threshold.

    The block itself lives in the rate limiter's block list so that login and
    every other caller of :meth:`RateLimiter.is_blocked` agree on who is locked.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        guard_settings: GuardSettings | None = None,
        *,
        max_attempts: int | None = None,
        lockout_duration: int | None = None,
    ) -> None:
        cfg = guard_settings if guard_settings is not None else default_settings
        self.rate_limiter = rate_limiter
        self.store = rate_limiter.store
        self.sink = rate_limiter.sink
        self.max_attempts = max_attempts or cfg.max_login_attempts
        self.lockout_duration = lockout_duration or cfg.lockout_duration

    def _key(self, purpose: str, identifier: str) -> str:
        return hash_key(f"{purpose}_lockout", identifier)

    def _now(self, now: float | None) -> float:
        return self.store.now() if now is None else now

    def record_failure(
        self,
        purpose: str,
        identifier: str,
        *,
        now: float | None = None,
        **details: Any,
    ) -> LockoutRecord:
        """Count one failure; lock the identifier once the threshold is reached."""
        now = self._now(now)

        def bump(current: Any) -> tuple[Any, tuple[LockoutRecord, bool]]:
            record = LockoutRecord.from_dict(current) if current else LockoutRecord(identifier)
            if record.locked_until is not None and now >= record.locked_until:
                record = LockoutRecord(identifier)
            count = record.attempt_count + 1
            locked_until = record.locked_until
            newly_locked = locked_until is None and count >= self.max_attempts
            if newly_locked:
                locked_until = now + self.lockout_duration
            updated = LockoutRecord(
                identifier=identifier,
                attempt_count=count,
                locked_until=locked_until,
                last_attempt=now,
            )
            return updated.to_dict(), (updated, newly_locked)

        try:
            record, newly_locked = self.store.update(
                self._key(purpose, identifier), bump, self.lockout_duration
            )
        except StoreUnavailable as err:
            logger.warning("Lockout counter unavailable for purpose=%s: %s", purpose, err.message)
            return LockoutRecord(identifier, last_attempt=now)

        if newly_locked:
            self.rate_limiter.block_identifier(
                purpose,
                identifier,
                self.lockout_duration,
                reason=f"{self.max_attempts} failed {purpose} attempts",
                now=now,
            )
            logger.warning(
                "Locked identifier for purpose=%s after %d failures", purpose, record.attempt_count
            )
            emit_safely(
                self.sink,
                SecurityEvent(
                    event_type=SecurityEventType.ACCOUNT_LOCKED,
                    purpose=purpose,
                    identifier=identifier,
                    timestamp=now,
                    details={
                        "attempts": record.attempt_count,
                        "locked_until": record.locked_until,
                        **details,
                    },
                ),
            )
        return record

    def attempts(self, purpose: str, identifier: str) -> int:
        try:
            raw = self.store.get(self._key(purpose, identifier))
        except StoreUnavailable:
            return 0
        return LockoutRecord.from_dict(raw).attempt_count if raw else 0

    def is_locked(self, purpose: str, identifier: str, *, now: float | None = None) -> bool:
        """True while the block is active; the counter resets once it lapses."""
        now = self._now(now)
        if self.rate_limiter.is_blocked(purpose, identifier, now=now) is not None:
            return True
        self._clear_stale(purpose, identifier, now)
        return False

    def remaining(self, purpose: str, identifier: str, *, now: float | None = None) -> float:
        """Seconds until the lockout lifts, or 0 when not locked."""
        now = self._now(now)
        block = self.rate_limiter.is_blocked(purpose, identifier, now=now)
        return block.remaining(now) if block else 0.0

    def unlock(self, purpose: str, identifier: str) -> None:
        """Lift an active lockout early and forget the failures."""
        self.rate_limiter.unblock(purpose, identifier)
        self.reset(purpose, identifier)

    def reset(self, purpose: str, identifier: str) -> None:
        """Forget all failures, e.g. after a successful login."""
        try:
            self.store.delete(self._key(purpose, identifier))
        except StoreUnavailable as err:
            logger.warning("Could not reset lockout counter for purpose=%s: %s", purpose, err.message)

    def _clear_stale(self, purpose: str, identifier: str, now: float) -> None:
        def clear(current: Any) -> tuple[Any, None]:
            if not current:
                return UNCHANGED, None
            record = LockoutRecord.from_dict(current)
            if record.locked_until is None or now < record.locked_until:
                return UNCHANGED, None
            return None, None

        try:
            self.store.update(self._key(purpose, identifier), clear, self.lockout_duration)
        except StoreUnavailable as err:
            logger.warning("Could not clear lockout counter for purpose=%s: %s", purpose, err.message)
