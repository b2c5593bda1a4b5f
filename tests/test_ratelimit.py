"""
tests/test_ratelimit.py -- AttemptRateLimiter (advisory client-side gate).

Covers:
  - Five attempts inside the window block the sixth
  - retry_after counts from the oldest in-window attempt
  - Records age out of the window
  - clear() after success, key normalization, per-key isolation
  - Bounded buffer: eviction only ever makes the limiter more permissive
"""

from __future__ import annotations

from datetime import timedelta

from auth.ratelimit import AttemptRateLimiter
from conftest import FakeClock


def _limiter(clock: FakeClock, **kwargs) -> AttemptRateLimiter:
    kwargs.setdefault("max_attempts", 5)
    kwargs.setdefault("window", timedelta(minutes=15))
    kwargs.setdefault("capacity", 1000)
    return AttemptRateLimiter(clock=clock, **kwargs)


class TestWindow:
    def test_allows_until_threshold(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        for _ in range(5):
            assert limiter.check_allowed("b@x.com").allowed
            limiter.record_attempt("b@x.com")
        decision = limiter.check_allowed("b@x.com")
        assert not decision.allowed

    def test_retry_after_from_oldest_attempt(self, clock: FakeClock) -> None:
        """Five attempts spread over ten minutes leave five minutes to wait."""
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_attempt("b@x.com")
            clock.tick(timedelta(minutes=2, seconds=30))
        # Attempts at t=0, 2.5, 5, 7.5, 10; now t=12.5 -> wait until t=15.
        clock.now -= timedelta(minutes=2, seconds=30)
        decision = limiter.check_allowed("b@x.com")
        assert not decision.allowed
        assert decision.retry_after == timedelta(minutes=5)

    def test_records_age_out(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_attempt("b@x.com")
        clock.tick(timedelta(minutes=15))
        assert limiter.check_allowed("b@x.com").allowed
        assert limiter.attempts("b@x.com") == 0

    def test_check_is_a_pure_read(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        for _ in range(10):
            limiter.check_allowed("b@x.com")
        assert limiter.attempts("b@x.com") == 0


class TestKeys:
    def test_clear_forgets_one_key(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_attempt("a@x.com")
            limiter.record_attempt("b@x.com")
        limiter.clear("a@x.com")
        assert limiter.check_allowed("a@x.com").allowed
        assert not limiter.check_allowed("b@x.com").allowed

    def test_keys_are_normalized(self, clock: FakeClock) -> None:
        limiter = _limiter(clock)
        for _ in range(5):
            limiter.record_attempt("  A@X.com ")
        assert not limiter.check_allowed("a@x.com").allowed

    def test_capacity_evicts_oldest(self, clock: FakeClock) -> None:
        limiter = _limiter(clock, capacity=6)
        for _ in range(5):
            limiter.record_attempt("a@x.com")
        assert not limiter.check_allowed("a@x.com").allowed
        limiter.record_attempt("b@x.com")
        limiter.record_attempt("c@x.com")
        assert limiter.attempts("a@x.com") == 4
        assert limiter.check_allowed("a@x.com").allowed
