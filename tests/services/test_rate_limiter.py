"""Tests for the rate limiter strategies and the block list."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest

from ladder_guard.core.errors import StoreUnavailable
from ladder_guard.core.security import hash_key
from ladder_guard.models.records import RateLimit
from ladder_guard.services import DEFAULT_LIMITS, MemoryEventSink, RateLimiter, SecurityEventType
from ladder_guard.store import MemoryStore, TTLStore

IP = "198.51.100.20"


@pytest.fixture()
def limiter(store: MemoryStore, guard_settings, sink: MemoryEventSink) -> RateLimiter:
    return RateLimiter(store, guard_settings, sink, rng=random.Random(7))


@pytest.fixture()
def broken_store(clock) -> MagicMock:
    broken = MagicMock(spec=TTLStore)
    broken.now.side_effect = clock
    error = StoreUnavailable("redis", "connection refused")
    for name in ("get", "put", "delete", "compare_and_swap", "update", "sweep"):
        getattr(broken, name).side_effect = error
    return broken


class TestLimitConfiguration:
    def test_default_limits(self, limiter: RateLimiter) -> None:
        assert limiter.limits_for("login") == RateLimit(requests=5, window=900)
        assert limiter.limits_for("export") == RateLimit(requests=5, window=3600)
        assert set(limiter.all_limits()) == set(DEFAULT_LIMITS)

    def test_unknown_purpose_uses_fallback(self, limiter: RateLimiter) -> None:
        assert limiter.limits_for("newsletter") == RateLimit(requests=10, window=3600)

    def test_suffixes_map_to_base_purpose(self, limiter: RateLimiter) -> None:
        assert limiter.limits_for("login_bucket") == limiter.limits_for("login")
        assert limiter.limits_for("search_attempts") == limiter.limits_for("search")

    def test_set_limits_overrides(self, limiter: RateLimiter) -> None:
        limiter.set_limits("search", RateLimit(requests=2, window=60))
        assert limiter.limits_for("search") == RateLimit(requests=2, window=60)

    def test_set_limits_rejects_non_positive(self, limiter: RateLimiter) -> None:
        with pytest.raises(ValueError):
            limiter.set_limits("search", RateLimit(requests=0, window=60))


class TestFixedWindow:
    def test_check_limit_is_side_effect_free(self, limiter: RateLimiter, store: MemoryStore) -> None:
        assert limiter.check_limit("login", IP) is True
        assert limiter.check_limit("login", IP) is True
        assert store.get(hash_key("login", IP)) is None

    def test_records_until_limit(self, limiter: RateLimiter, clock) -> None:
        for _ in range(5):
            assert limiter.check_limit("login", IP) is True
            limiter.record_attempt("login", IP)
            clock.advance(1)
        assert limiter.check_limit("login", IP) is False

    def test_window_slides_past_old_attempts(self, limiter: RateLimiter, clock) -> None:
        for _ in range(5):
            limiter.record_attempt("login", IP)
        assert limiter.check_limit("login", IP) is False
        clock.advance(901)
        assert limiter.check_limit("login", IP) is True

    def test_check_and_record_admits_exactly_limit(self, limiter: RateLimiter, sink: MemoryEventSink) -> None:
        results = [limiter.check_and_record("login", IP) for _ in range(7)]
        assert results == [True] * 5 + [False] * 2
        rejected = sink.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert len(rejected) == 2
        assert rejected[0].details == {"strategy": "fixed_window"}

    def test_rejected_attempts_are_not_recorded(self, limiter: RateLimiter, clock) -> None:
        for _ in range(5):
            limiter.check_and_record("login", IP)
        clock.advance(10)
        limiter.check_and_record("login", IP)
        info = limiter.get_remaining_requests("login", IP)
        assert info.remaining == 0
        # Reset follows the oldest admitted request, not the rejected one.
        assert info.reset_at == clock() - 10 + 900

    def test_identifiers_are_independent(self, limiter: RateLimiter) -> None:
        for _ in range(5):
            limiter.check_and_record("login", IP)
        assert limiter.check_and_record("login", "192.0.2.1") is True
        assert limiter.check_and_record("search", IP) is True

    def test_explicit_limit_and_window(self, limiter: RateLimiter, clock) -> None:
        assert limiter.check_and_record("export", IP, 1, 10) is True
        assert limiter.check_and_record("export", IP, 1, 10) is False
        clock.advance(11)
        assert limiter.check_and_record("export", IP, 1, 10) is True

    def test_five_per_minute(self, limiter: RateLimiter, clock) -> None:
        start = clock()
        for _ in range(5):
            assert limiter.check_and_record("form_submission", IP, 5, 60) is True
            clock.advance(10)
        assert limiter.check_and_record("form_submission", IP, 5, 60) is False
        clock.now = start + 61
        assert limiter.check_and_record("form_submission", IP, 5, 60) is True


class TestTokenBucket:
    def test_bucket_starts_full(self, limiter: RateLimiter) -> None:
        results = [limiter.check_token_bucket("api", IP, capacity=3, refill_rate=0.0) for _ in range(4)]
        assert results == [True, True, True, False]

    def test_bucket_refills_over_time(self, limiter: RateLimiter, clock) -> None:
        for _ in range(2):
            limiter.check_token_bucket("api", IP, capacity=2, refill_rate=0.5)
        assert limiter.check_token_bucket("api", IP, capacity=2, refill_rate=0.5) is False
        clock.advance(2)
        assert limiter.check_token_bucket("api", IP, capacity=2, refill_rate=0.5) is True
        assert limiter.check_token_bucket("api", IP, capacity=2, refill_rate=0.5) is False

    def test_refill_never_exceeds_capacity(self, limiter: RateLimiter, store: MemoryStore, clock) -> None:
        limiter.check_token_bucket("api", IP, capacity=4, refill_rate=10)
        clock.advance(1000)
        limiter.check_token_bucket("api", IP, capacity=4, refill_rate=10)
        bucket = store.get(hash_key("api_bucket", IP))
        assert bucket == {"tokens": 3.0, "last_refill": clock()}

    def test_cost_larger_than_balance_is_rejected(self, limiter: RateLimiter, store: MemoryStore) -> None:
        assert limiter.check_token_bucket("file_upload", IP, capacity=5, refill_rate=0, cost=6) is False
        # The full bucket is still persisted and untouched.
        assert store.get(hash_key("file_upload_bucket", IP))["tokens"] == 5.0


class TestSlidingWindow:
    def test_limits_within_current_window(self, limiter: RateLimiter, clock) -> None:
        clock.now = 60_000.0
        results = [limiter.check_sliding_window("search", IP, 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    def test_previous_window_weighs_in(self, limiter: RateLimiter, clock) -> None:
        clock.now = 60_000.0
        for _ in range(4):
            limiter.check_sliding_window("search", IP, 4, 60)
        # 15s into the next window the previous four still count as three.
        clock.now = 60_075.0
        assert limiter.check_sliding_window("search", IP, 4, 60) is True
        assert limiter.check_sliding_window("search", IP, 4, 60) is False

    def test_burst_across_boundary_is_smoothed(self, limiter: RateLimiter, clock) -> None:
        base = 60_000.0
        clock.now = base + 59
        assert all(limiter.check_sliding_window("search", IP, 10, 60) for _ in range(10))

        clock.now = base + 61
        burst = [limiter.check_sliding_window("search", IP, 10, 60) for _ in range(9)]
        assert burst.count(True) == 1

        clock.now = base + 120
        assert all(limiter.check_sliding_window("search", IP, 10, 60) for _ in range(8))

    def test_previous_window_fades_out(self, limiter: RateLimiter, clock) -> None:
        clock.now = 60_000.0
        for _ in range(4):
            limiter.check_sliding_window("search", IP, 4, 60)
        clock.now = 60_120.0
        assert all(limiter.check_sliding_window("search", IP, 4, 60) for _ in range(4))


class TestBlockList:
    def test_block_and_expire(self, limiter: RateLimiter, clock, sink: MemoryEventSink) -> None:
        block = limiter.block_identifier("login", IP, 300, reason="manual")
        assert block.blocked_until == clock() + 300
        assert limiter.is_blocked("login", IP) == block
        assert sink.of_type(SecurityEventType.IDENTIFIER_BLOCKED)[0].details["reason"] == "manual"

        clock.advance(300)
        assert limiter.is_blocked("login", IP) is None

    def test_block_is_scoped_to_purpose(self, limiter: RateLimiter) -> None:
        limiter.block_identifier("login", IP, 300)
        assert limiter.is_blocked("api", IP) is None

    def test_stale_record_is_cleared(self, limiter: RateLimiter, store: MemoryStore, clock) -> None:
        key = hash_key("login_blocked", IP)
        # A record outliving its own deadline, e.g. written by a skewed clock.
        store.put(key, {"identifier": IP, "blocked_until": clock() - 1, "reason": "", "blocked_at": 0.0}, 60)
        assert limiter.is_blocked("login", IP) is None
        assert store.get(key) is None

    def test_unblock(self, limiter: RateLimiter, sink: MemoryEventSink) -> None:
        limiter.block_identifier("login", IP, 300)
        assert limiter.unblock("login", IP) is True
        assert limiter.is_blocked("login", IP) is None
        assert limiter.unblock("login", IP) is False
        assert len(sink.of_type(SecurityEventType.IDENTIFIER_UNBLOCKED)) == 1


class TestProgressiveDelay:
    def test_delay_doubles_with_jitter(self, limiter: RateLimiter) -> None:
        delays = [limiter.get_progressive_delay("password_reset", IP) for _ in range(4)]
        for attempt, delay in enumerate(delays):
            base = 2.0**attempt
            assert base <= delay <= base * 1.1

    def test_delay_is_capped(self, limiter: RateLimiter) -> None:
        for _ in range(20):
            delay = limiter.get_progressive_delay("password_reset", IP, base_delay=1, max_delay=30)
        assert 30 <= delay <= 33

    def test_reset_attempts(self, limiter: RateLimiter) -> None:
        for _ in range(5):
            limiter.get_progressive_delay("password_reset", IP)
        limiter.reset_attempts("password_reset", IP)
        assert limiter.get_progressive_delay("password_reset", IP) <= 1.1


class TestIntrospection:
    def test_remaining_requests_for_fresh_identifier(self, limiter: RateLimiter, clock) -> None:
        info = limiter.get_remaining_requests("api", IP)
        assert info.remaining == 100
        assert info.total == 100
        assert info.window == 3600
        assert info.reset_at == clock() + 3600

    def test_remaining_never_negative(self, limiter: RateLimiter) -> None:
        for _ in range(3):
            limiter.record_attempt("export", IP)
        assert limiter.get_remaining_requests("export", IP, limit=2).remaining == 0

    def test_http_headers(self, limiter: RateLimiter) -> None:
        limiter.check_and_record("api", IP)
        headers = limiter.http_headers(limiter.get_remaining_requests("api", IP))
        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "99"
        assert headers["X-RateLimit-Window"] == "3600"
        assert int(headers["X-RateLimit-Reset"]) >= 0

    def test_stats(self, limiter: RateLimiter, clock) -> None:
        limiter.check_and_record("login", IP)
        limiter.block_identifier("login", IP, 60)
        stats = limiter.get_stats("login", IP)
        assert stats["limits"] == {"requests": 5, "window": 900}
        assert stats["remaining"]["remaining"] == 4
        assert stats["blocked"]["blocked_until"] == clock() + 60
        assert stats["current_time"] == clock()

    def test_cleanup_sweeps_store(self, limiter: RateLimiter, clock) -> None:
        limiter.record_attempt("export", IP, window=10)
        clock.advance(20)
        assert limiter.cleanup() == 1


class TestStoreUnavailable:
    def test_fails_open(self, broken_store: MagicMock, guard_settings) -> None:
        sink = MemoryEventSink()
        limiter = RateLimiter(broken_store, guard_settings, sink)

        assert limiter.check_limit("login", IP) is True
        assert limiter.check_and_record("login", IP) is True
        assert limiter.check_token_bucket("api", IP) is True
        assert limiter.check_sliding_window("search", IP, 1, 60) is True
        assert limiter.is_blocked("login", IP) is None
        assert limiter.get_remaining_requests("login", IP).remaining == 5

        events = sink.of_type(SecurityEventType.STORE_UNAVAILABLE)
        assert len(events) == 6
        assert events[0].details == {"operation": "check_limit", "backend": "redis"}

    def test_cleanup_reports_nothing_removed(self, broken_store: MagicMock, guard_settings) -> None:
        limiter = RateLimiter(broken_store, guard_settings, MemoryEventSink())
        assert limiter.cleanup() == 0

    def test_sink_failures_do_not_escape(self, store: MemoryStore, guard_settings) -> None:
        failing_sink = MagicMock()
        failing_sink.emit.side_effect = RuntimeError("sink down")
        limiter = RateLimiter(store, guard_settings, failing_sink)
        for _ in range(6):
            limiter.check_and_record("login", IP)
        assert failing_sink.emit.called


class TestContention:
    @pytest.fixture()
    def contended_store(self, clock) -> MemoryStore:
        class LosingEveryRace(MemoryStore):
            def compare_and_swap(self, key, expected, new, ttl):
                return False

        return LosingEveryRace(clock=clock, max_retries=3)

    def test_admission_checks_fail_closed(self, contended_store: MemoryStore, guard_settings) -> None:
        sink = MemoryEventSink()
        limiter = RateLimiter(contended_store, guard_settings, sink)

        assert limiter.check_and_record("login", IP) is False
        assert limiter.check_token_bucket("api", IP) is False
        assert limiter.check_sliding_window("search", IP, 10, 60) is False

        rejected = sink.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert [event.details["strategy"] for event in rejected] == [
            "fixed_window",
            "token_bucket",
            "sliding_window",
        ]
        assert sink.of_type(SecurityEventType.STORE_UNAVAILABLE) == []

    def test_dry_check_is_unaffected(self, contended_store: MemoryStore, guard_settings) -> None:
        limiter = RateLimiter(contended_store, guard_settings, MemoryEventSink())
        assert limiter.check_limit("login", IP) is True
