"""Tests for the token bucket limiter and adaptive difficulty."""

import math
import threading

import pytest

from wisdom.services.rate_limiter import RateLimiter, adaptive_difficulty
from tests.test_utils import FakeClock

IP = "192.0.2.10"


class TestAllow:
    """Tests for RateLimiter.allow."""

    def test_burst_then_refuse(self, limiter):
        """Test that capacity requests pass and the next one is refused."""
        assert limiter.allow(IP) == (True, 1)
        assert limiter.allow(IP) == (True, 2)
        assert limiter.allow(IP) == (False, 3)

    def test_refused_attempts_are_counted(self, limiter):
        """Test that the attempt counter keeps climbing while refused."""
        for _ in range(2):
            limiter.allow(IP)
        results = [limiter.allow(IP) for _ in range(5)]

        assert [allowed for allowed, _ in results] == [False] * 5
        assert [attempts for _, attempts in results] == [3, 4, 5, 6, 7]

    def test_refill_after_one_over_rate(self, clock):
        """Test that a drained bucket allows again after 1/R seconds."""
        limiter = RateLimiter(rate=4, capacity=2, clock=clock)
        limiter.allow(IP)
        limiter.allow(IP)
        assert limiter.allow(IP)[0] is False

        clock.advance(0.2)  # less than 1/R
        assert limiter.allow(IP)[0] is False

        clock.advance(0.25)
        assert limiter.allow(IP)[0] is True

    @pytest.mark.parametrize("elapsed", [0.5, 1.0, 2.5, 10.0])
    def test_refill_is_capped(self, clock, elapsed):
        """Test that after t seconds min(capacity, floor(t*R)) requests pass."""
        rate, capacity = 2, 3
        limiter = RateLimiter(rate=rate, capacity=capacity, clock=clock)
        for _ in range(capacity):
            assert limiter.allow(IP)[0] is True

        clock.advance(elapsed)
        passed = 0
        while limiter.allow(IP)[0]:
            passed += 1

        assert passed == min(capacity, math.floor(elapsed * rate))

    def test_addresses_are_independent(self, limiter):
        """Test that each address has its own bucket."""
        limiter.allow(IP)
        limiter.allow(IP)
        assert limiter.allow(IP)[0] is False
        assert limiter.allow("192.0.2.11") == (True, 1)

    @pytest.mark.parametrize("address", [None, ""])
    def test_missing_address_always_allowed(self, limiter, address):
        """Test that an unknown address bypasses the limiter."""
        for _ in range(10):
            assert limiter.allow(address) == (True, 0)
        assert len(limiter) == 0

    def test_invalid_parameters(self):
        """Test that non-positive rate or capacity is rejected."""
        with pytest.raises(ValueError):
            RateLimiter(rate=0, capacity=1)
        with pytest.raises(ValueError):
            RateLimiter(rate=1, capacity=0)


class TestReset:
    """Tests for RateLimiter.reset."""

    def test_reset_restores_fresh_bucket(self, limiter):
        """Test that the next allow after reset behaves like a first request."""
        for _ in range(5):
            limiter.allow(IP)

        limiter.reset(IP)

        assert limiter.allow(IP) == (True, 1)
        assert limiter.allow(IP) == (True, 2)

    def test_reset_unknown_address(self, limiter):
        """Test that resetting an unseen or missing address is a no-op."""
        limiter.reset("198.51.100.1")
        limiter.reset(None)
        assert len(limiter) == 0


class TestSweep:
    """Tests for the background bucket sweep."""

    def test_sweep_removes_stale_buckets(self, limiter, clock):
        """Test that buckets idle for more than twice the interval are dropped."""
        limiter.allow(IP)
        clock.advance(2 * limiter.sweep_interval + 1)
        limiter.allow("192.0.2.11")

        assert limiter.sweep() == 1
        assert len(limiter) == 1
        assert limiter.allow(IP) == (True, 1)

    def test_sweep_keeps_recent_buckets(self, limiter, clock):
        """Test that buckets within the window survive."""
        limiter.allow(IP)
        clock.advance(2 * limiter.sweep_interval)

        assert limiter.sweep() == 0
        assert len(limiter) == 1

    def test_start_and_shutdown(self, limiter):
        """Test that the sweep scheduler starts once and stops cleanly."""
        limiter.start()
        limiter.start()
        limiter.shutdown()
        limiter.shutdown()


class TestConcurrency:
    """Tests for concurrent access to the bucket table."""

    def test_no_double_spent_tokens(self):
        """Test that concurrent allows never hand out more than capacity."""
        clock = FakeClock()
        capacity = 50
        limiter = RateLimiter(rate=1, capacity=capacity, clock=clock)
        results = []
        results_lock = threading.Lock()

        def worker():
            local = [limiter.allow(IP) for _ in range(100)]
            with results_lock:
                results.extend(local)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for allowed, _ in results if allowed) == capacity
        assert sorted(attempts for _, attempts in results) == list(range(1, 801))

    def test_sweep_during_allows(self):
        """Test that sweeping while allowing keeps the table consistent."""
        clock = FakeClock()
        limiter = RateLimiter(rate=1, capacity=5, sweep_interval=0.001, clock=clock)
        stop = threading.Event()

        def sweeper():
            while not stop.is_set():
                limiter.sweep()

        t = threading.Thread(target=sweeper)
        t.start()
        try:
            for i in range(500):
                clock.advance(0.01)
                allowed, attempts = limiter.allow(f"10.0.0.{i % 10}")
                assert attempts >= 1
        finally:
            stop.set()
            t.join()


class TestAdaptiveDifficulty:
    """Tests for adaptive_difficulty."""

    @pytest.mark.parametrize(
        ("attempts", "expected"),
        [
            (1, 20),
            (2, 20),
            (3, 21),
            (5, 21),
            (6, 22),
            (10, 22),
            (11, 23),
            (20, 23),
            (21, 24),
            (1000, 24),
        ],
    )
    def test_steps(self, attempts, expected):
        """Test the step table on top of a base of 20 bits."""
        assert adaptive_difficulty(20, attempts) == expected

    def test_monotone(self):
        """Test that difficulty never decreases as attempts grow."""
        values = [adaptive_difficulty(16, n) for n in range(0, 100)]
        assert values == sorted(values)
        assert max(values) == 20
