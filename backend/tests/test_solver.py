"""Tests for the parallel solver."""

import multiprocessing
import os
import time

import pytest

from wisdom.services.pow_service import generate_challenge, verify
from wisdom.solver import SolveTimeoutError, default_workers, solve_parallel


class TestSolveParallel:
    """Tests for solve_parallel."""

    def test_finds_valid_nonce(self):
        """Test that the returned nonce verifies."""
        challenge = generate_challenge(12, 60, "quote")

        nonce = solve_parallel(challenge, timeout=30, workers=4)

        assert verify(challenge, nonce, "quote")

    def test_single_worker(self):
        """Test that one worker still covers the whole search space."""
        challenge = generate_challenge(8, 60, "quote")

        nonce = solve_parallel(challenge, timeout=30, workers=1)

        assert verify(challenge, nonce, "quote")

    def test_zero_bits(self):
        """Test that any worker's first nonce satisfies a zero-bit challenge."""
        challenge = generate_challenge(0, 60, "quote")

        nonce = solve_parallel(challenge, timeout=30, workers=3)

        assert nonce in {"0", "1", "2"}

    def test_timeout(self):
        """Test that an unreachable target times out promptly without leaking workers."""
        challenge = generate_challenge(200, 60, "quote")

        started = time.perf_counter()
        with pytest.raises(SolveTimeoutError):
            solve_parallel(challenge, timeout=0.5, workers=2)

        assert time.perf_counter() - started < 10
        assert multiprocessing.active_children() == []

    def test_no_workers_left_after_success(self):
        """Test that losing workers are stopped once a solution is published."""
        challenge = generate_challenge(10, 60, "quote")

        solve_parallel(challenge, timeout=30, workers=4)

        assert multiprocessing.active_children() == []

    def test_default_workers(self):
        """Test that the pool is sized to at least one worker."""
        assert default_workers() >= 1

    def test_default_workers_follows_affinity(self, monkeypatch):
        """Test that a restricted affinity mask caps the pool size."""
        monkeypatch.setattr(os, "sched_getaffinity", lambda pid: {0, 1}, raising=False)
        monkeypatch.setattr(os, "cpu_count", lambda: 64)

        assert default_workers() == 2

    def test_default_workers_without_affinity(self, monkeypatch):
        """Test the fallback on platforms without sched_getaffinity."""
        monkeypatch.delattr(os, "sched_getaffinity", raising=False)
        monkeypatch.setattr(os, "cpu_count", lambda: None)

        assert default_workers() == 1
