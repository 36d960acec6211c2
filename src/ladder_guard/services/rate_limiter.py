"""Rate limiting strategies and the identifier block list.

Every mutation is a single atomic :meth:`TTLStore.update` on one key, so the
limiter is safe to share between worker processes as long as they share a
store. When the store cannot be reached the limiter fails open: the caller
is allowed through and a ``store_unavailable`` event is emitted. A key so
contended that compare-and-swap keeps losing is the opposite case: the
admission checks reject.
"""

from __future__ import annotations

import logging
import math
import random
import re
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from ladder_guard.core.errors import StoreContention, StoreUnavailable
from ladder_guard.core.security import hash_key
from ladder_guard.core.settings import GuardSettings
from ladder_guard.core.settings import settings as default_settings
from ladder_guard.models.records import (
    BlockRecord,
    BucketRecord,
    RateLimit,
    RateLimitInfo,
    WindowRecord,
)
from ladder_guard.services.events import (
    LoggingEventSink,
    SecurityEvent,
    SecurityEventSink,
    SecurityEventType,
    emit_safely,
)
from ladder_guard.store.base import UNCHANGED, TTLStore

logger = logging.getLogger(__name__)

DEFAULT_LIMITS: dict[str, RateLimit] = {
    "login": RateLimit(requests=5, window=900),
    "api": RateLimit(requests=100, window=3600),
    "password_reset": RateLimit(requests=3, window=3600),
    "file_upload": RateLimit(requests=10, window=600),
    "form_submission": RateLimit(requests=20, window=3600),
    "search": RateLimit(requests=50, window=3600),
    "export": RateLimit(requests=5, window=3600),
}

BUCKET_TTL = 3600
ATTEMPTS_TTL = 3600
JITTER_RATIO = 0.1

_SUFFIX_PATTERN = re.compile(r"_(?:bucket|sliding|blocked|attempts|lockout)$")


class RateLimiter:
    """Fixed window, token bucket, sliding window, backoff and block list."""

    def __init__(
        self,
        store: TTLStore,
        guard_settings: GuardSettings | None = None,
        sink: SecurityEventSink | None = None,
        *,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.settings = guard_settings if guard_settings is not None else default_settings
        self.sink = sink if sink is not None else LoggingEventSink()
        self._clock = clock if clock is not None else store.now
        self._rng = rng or random.Random()
        self._limits: dict[str, RateLimit] = dict(DEFAULT_LIMITS)
        self._fallback = RateLimit(
            requests=self.settings.rate_limit_default_requests,
            window=self.settings.rate_limit_default_window,
        )

    # ------------------------------------------------------------------
    # Limit configuration
    # ------------------------------------------------------------------
    def limits_for(self, purpose: str) -> RateLimit:
        """Return the configured limit for ``purpose`` (suffixes ignored)."""
        base = _SUFFIX_PATTERN.sub("", purpose)
        return self._limits.get(base, self._fallback)

    def set_limits(self, purpose: str, limit: RateLimit) -> None:
        if limit.requests < 1 or limit.window < 1:
            raise ValueError("requests and window must both be positive")
        self._limits[purpose] = limit

    def all_limits(self) -> dict[str, RateLimit]:
        return dict(self._limits)

    def _resolve(self, purpose: str, limit: int | None, window: int | None) -> RateLimit:
        configured = self.limits_for(purpose)
        return RateLimit(
            requests=configured.requests if limit is None else limit,
            window=configured.window if window is None else window,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    def _emit(
        self,
        event_type: SecurityEventType,
        purpose: str,
        identifier: str,
        now: float,
        **details: Any,
    ) -> None:
        emit_safely(
            self.sink,
            SecurityEvent(
                event_type=event_type,
                purpose=purpose,
                identifier=identifier,
                timestamp=now,
                details=details,
            ),
        )

    def _fail_open(
        self, operation: str, purpose: str, identifier: str, now: float, err: StoreUnavailable
    ) -> None:
        logger.warning(
            "Rate limiter %s failing open for purpose=%s: %s", operation, purpose, err.message
        )
        self._emit(
            SecurityEventType.STORE_UNAVAILABLE,
            purpose,
            identifier,
            now,
            operation=operation,
            backend=err.backend,
        )

    def _contended(self, strategy: str, purpose: str, identifier: str, now: float) -> bool:
        logger.warning("Rejecting contended %s check for purpose=%s", strategy, purpose)
        self.report_rejected(strategy, purpose, identifier, now)
        return False

    def report_rejected(self, strategy: str, purpose: str, identifier: str, now: float) -> None:
        """Log and emit a rejection decided here or by a caller using a dry check."""
        logger.warning("Rate limit exceeded (%s) for purpose=%s", strategy, purpose)
        self._emit(SecurityEventType.RATE_LIMIT_EXCEEDED, purpose, identifier, now, strategy=strategy)

    # ------------------------------------------------------------------
    # Fixed window
    # ------------------------------------------------------------------
    def check_limit(
        self,
        purpose: str,
        identifier: str,
        limit: int | None = None,
        window: int | None = None,
        *,
        now: float | None = None,
    ) -> bool:
        """Dry check: True iff fewer than ``limit`` requests fall inside the window."""
        now = self._now(now)
        rate = self._resolve(purpose, limit, window)
        try:
            raw = self.store.get(hash_key(purpose, identifier))
        except StoreUnavailable as err:
            self._fail_open("check_limit", purpose, identifier, now, err)
            return True
        return WindowRecord.from_dict(raw).count(now, rate.window) < rate.requests

    def record_attempt(
        self,
        purpose: str,
        identifier: str,
        window: int | None = None,
        *,
        now: float | None = None,
    ) -> None:
        """Append ``now`` to the window record and purge stale timestamps."""
        now = self._now(now)
        rate = self._resolve(purpose, None, window)

        def append(current: Any) -> tuple[Any, None]:
            return WindowRecord.from_dict(current).appended(now, rate.window).to_dict(), None

        try:
            self.store.update(hash_key(purpose, identifier), append, rate.window)
        except StoreUnavailable as err:
            self._fail_open("record_attempt", purpose, identifier, now, err)

    def check_and_record(
        self,
        purpose: str,
        identifier: str,
        limit: int | None = None,
        window: int | None = None,
        *,
        now: float | None = None,
    ) -> bool:
        """Atomically check the window and record the attempt only if allowed."""
        now = self._now(now)
        rate = self._resolve(purpose, limit, window)

        def admit(current: Any) -> tuple[Any, bool]:
            record = WindowRecord.from_dict(current).purged(now, rate.window)
            if len(record.requests) >= rate.requests:
                return UNCHANGED, False
            return record.appended(now, rate.window).to_dict(), True

        try:
            allowed = self.store.update(hash_key(purpose, identifier), admit, rate.window)
        except StoreContention:
            return self._contended("fixed_window", purpose, identifier, now)
        except StoreUnavailable as err:
            self._fail_open("check_and_record", purpose, identifier, now, err)
            return True
        if not allowed:
            self.report_rejected("fixed_window", purpose, identifier, now)
        return allowed

    # ------------------------------------------------------------------
    # Token bucket
    # ------------------------------------------------------------------
    def check_token_bucket(
        self,
        purpose: str,
        identifier: str,
        capacity: float = 10,
        refill_rate: float = 1.0,
        cost: float = 1,
        *,
        now: float | None = None,
    ) -> bool:
        """Refill then charge ``cost`` tokens in one atomic step."""
        now = self._now(now)

        def charge(current: Any) -> tuple[Any, bool]:
            if current is None:
                bucket = BucketRecord(tokens=float(capacity), last_refill=now)
            else:
                bucket = BucketRecord.from_dict(current)
            bucket = bucket.refilled(now, capacity, refill_rate)
            if bucket.tokens >= cost:
                return bucket.withdrawn(cost).to_dict(), True
            # Persist the refill so the next caller does not re-credit it.
            return bucket.to_dict(), False

        try:
            allowed = self.store.update(hash_key(f"{purpose}_bucket", identifier), charge, BUCKET_TTL)
        except StoreContention:
            return self._contended("token_bucket", purpose, identifier, now)
        except StoreUnavailable as err:
            self._fail_open("check_token_bucket", purpose, identifier, now, err)
            return True
        if not allowed:
            self.report_rejected("token_bucket", purpose, identifier, now)
        return allowed

    # ------------------------------------------------------------------
    # Sliding window approximation
    # ------------------------------------------------------------------
    def check_sliding_window(
        self,
        purpose: str,
        identifier: str,
        limit: int,
        window: int,
        *,
        now: float | None = None,
    ) -> bool:
        """Blend the previous and current fixed windows by elapsed fraction."""
        now = self._now(now)
        index = math.floor(now / window)
        base_key = hash_key(f"{purpose}_sliding", identifier)
        progress = (now - index * window) / window

        try:
            previous_count = int(self.store.get(f"{base_key}_{index - 1}") or 0)
            weighted_previous = previous_count * (1 - progress)

            def increment(current: Any) -> tuple[Any, bool]:
                count = int(current or 0)
                if count + weighted_previous >= limit:
                    return UNCHANGED, False
                return count + 1, True

            allowed = self.store.update(f"{base_key}_{index}", increment, window * 2)
        except StoreContention:
            return self._contended("sliding_window", purpose, identifier, now)
        except StoreUnavailable as err:
            self._fail_open("check_sliding_window", purpose, identifier, now, err)
            return True
        if not allowed:
            self.report_rejected("sliding_window", purpose, identifier, now)
        return allowed

    # ------------------------------------------------------------------
    # Block list
    # ------------------------------------------------------------------
    def block_identifier(
        self,
        purpose: str,
        identifier: str,
        duration: float,
        reason: str = "",
        *,
        now: float | None = None,
    ) -> BlockRecord:
        now = self._now(now)
        block = BlockRecord(
            identifier=identifier,
            blocked_until=now + duration,
            reason=reason,
            blocked_at=now,
        )
        try:
            self.store.put(hash_key(f"{purpose}_blocked", identifier), block.to_dict(), duration)
        except StoreUnavailable as err:
            self._fail_open("block_identifier", purpose, identifier, now, err)
            return block
        logger.warning("Blocked identifier for purpose=%s for %ss", purpose, duration)
        self._emit(
            SecurityEventType.IDENTIFIER_BLOCKED,
            purpose,
            identifier,
            now,
            blocked_until=block.blocked_until,
            reason=reason,
        )
        return block

    def is_blocked(self, purpose: str, identifier: str, *, now: float | None = None) -> BlockRecord | None:
        """Return the active block or None; stale records are cleared."""
        now = self._now(now)
        key = hash_key(f"{purpose}_blocked", identifier)
        try:
            raw = self.store.get(key)
            if raw is None:
                return None
            block = BlockRecord.from_dict(raw)
            if block.is_active(now):
                return block
            # Only clear the exact record we read; a fresh block must survive.
            self.store.compare_and_swap(key, raw, None, 0)
        except StoreUnavailable as err:
            self._fail_open("is_blocked", purpose, identifier, now, err)
        return None

    def unblock(self, purpose: str, identifier: str) -> bool:
        now = self._clock()
        try:
            removed = self.store.delete(hash_key(f"{purpose}_blocked", identifier))
        except StoreUnavailable as err:
            self._fail_open("unblock", purpose, identifier, now, err)
            return False
        if removed:
            logger.info("Unblocked identifier for purpose=%s", purpose)
            self._emit(SecurityEventType.IDENTIFIER_UNBLOCKED, purpose, identifier, now)
        return removed

    # ------------------------------------------------------------------
    # Progressive delay
    # ------------------------------------------------------------------
    def get_progressive_delay(
        self,
        purpose: str,
        identifier: str,
        base_delay: float = 1,
        max_delay: float = 300,
        *,
        now: float | None = None,
    ) -> float:
        """Return the exponential backoff for this attempt and count it."""
        now = self._now(now)

        def bump(current: Any) -> tuple[Any, int]:
            attempts = int(current or 0)
            return attempts + 1, attempts

        try:
            attempts = self.store.update(hash_key(f"{purpose}_attempts", identifier), bump, ATTEMPTS_TTL)
        except StoreUnavailable as err:
            self._fail_open("get_progressive_delay", purpose, identifier, now, err)
            attempts = 0
        # Cap the exponent so huge counters cannot overflow the float.
        delay = min(float(max_delay), base_delay * 2.0 ** min(attempts, 64))
        return delay + self._rng.uniform(0, delay * JITTER_RATIO)

    def reset_attempts(self, purpose: str, identifier: str) -> None:
        try:
            self.store.delete(hash_key(f"{purpose}_attempts", identifier))
        except StoreUnavailable as err:
            self._fail_open("reset_attempts", purpose, identifier, self._clock(), err)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_remaining_requests(
        self,
        purpose: str,
        identifier: str,
        limit: int | None = None,
        window: int | None = None,
        *,
        now: float | None = None,
    ) -> RateLimitInfo:
        now = self._now(now)
        rate = self._resolve(purpose, limit, window)
        try:
            raw = self.store.get(hash_key(purpose, identifier))
        except StoreUnavailable as err:
            self._fail_open("get_remaining_requests", purpose, identifier, now, err)
            raw = None
        requests = WindowRecord.from_dict(raw).purged(now, rate.window).requests
        oldest = min(requests) if requests else now
        return RateLimitInfo(
            remaining=max(0, rate.requests - len(requests)),
            reset_at=oldest + rate.window,
            total=rate.requests,
            window=rate.window,
        )

    def get_stats(self, purpose: str, identifier: str, *, now: float | None = None) -> dict[str, Any]:
        now = self._now(now)
        limits = self.limits_for(purpose)
        block = self.is_blocked(purpose, identifier, now=now)
        return {
            "purpose": purpose,
            "identifier": identifier,
            "limits": asdict(limits),
            "remaining": asdict(self.get_remaining_requests(purpose, identifier, now=now)),
            "blocked": block.to_dict() if block else None,
            "current_time": now,
        }

    @staticmethod
    def http_headers(info: RateLimitInfo) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(info.total),
            "X-RateLimit-Remaining": str(info.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(info.reset_at))),
            "X-RateLimit-Window": str(info.window),
        }

    def cleanup(self) -> int:
        """Sweep expired entries from the backing store."""
        try:
            removed = self.store.sweep()
        except StoreUnavailable as err:
            logger.warning("Store sweep skipped: %s", err.message)
            return 0
        logger.debug("Rate limiter cleanup removed %d entries", removed)
        return removed
