"""
Tests for the fixed-window rate limiter.

Uses an injected clock so window resets are deterministic.
"""
import pytest

from app.services.rate_limit import FixedWindowRateLimiter


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestFixedWindowRateLimiter:

    def test_allows_up_to_max_hits(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(3, 60, clock=clock)

        decisions = [limiter.hit("1.2.3.4") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

    def test_rejects_with_retry_after(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(2, 60, clock=clock)
        limiter.hit()
        limiter.hit()
        clock.advance(15)

        decision = limiter.hit()
        assert decision.allowed is False
        assert decision.retry_after == 45

    def test_window_resets(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(1, 60, clock=clock)
        assert limiter.hit().allowed
        assert not limiter.hit().allowed

        clock.advance(60)
        assert limiter.hit().allowed

    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(1, 60, clock=FakeClock())
        assert limiter.hit("a").allowed
        assert limiter.hit("b").allowed
        assert not limiter.hit("a").allowed

    def test_capacity_evicts_expired_then_oldest(self):
        clock = FakeClock()
        limiter = FixedWindowRateLimiter(1, 60, capacity=2, clock=clock)
        limiter.hit("a")
        clock.advance(30)
        limiter.hit("b")
        clock.advance(31)  # "a" has expired, "b" has not

        limiter.hit("c")
        assert set(limiter.tracked_keys()) == {"b", "c"}

        limiter.hit("d")
        assert set(limiter.tracked_keys()) == {"c", "d"}

    def test_instances_do_not_share_state(self):
        clock = FakeClock()
        first = FixedWindowRateLimiter(1, 60, clock=clock)
        second = FixedWindowRateLimiter(1, 60, clock=clock)
        first.hit()
        assert second.hit().allowed

    def test_reset_clears_counters(self):
        limiter = FixedWindowRateLimiter(1, 60, clock=FakeClock())
        limiter.hit()
        limiter.reset()
        assert limiter.hit().allowed

    @pytest.mark.parametrize("max_hits, window", [(0, 60), (1, 0)])
    def test_rejects_invalid_configuration(self, max_hits, window):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(max_hits, window)
