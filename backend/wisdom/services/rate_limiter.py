"""
Per-client token bucket rate limiting with adaptive PoW difficulty.

Buckets are keyed by client IP. Every attempt is counted, including the ones
that get refused, because the attempt counter drives the difficulty ramp.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from wisdom.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL = 300.0  # 5 minutes

# (max attempts, extra bits); anything above the last row gets MAX_EXTRA_BITS
_DIFFICULTY_STEPS = ((2, 0), (5, 1), (10, 2), (20, 3))
MAX_EXTRA_BITS = 4


def adaptive_difficulty(base_bits: int, attempts: int) -> int:
    """
    Return the PoW difficulty for a client that has made ``attempts`` requests.

    1-2 attempts: base, 3-5: +1, 6-10: +2, 11-20: +3, 21+: +4 (cap).
    """
    for max_attempts, extra in _DIFFICULTY_STEPS:
        if attempts <= max_attempts:
            return base_bits + extra
    return base_bits + MAX_EXTRA_BITS


@dataclass
class Bucket:
    tokens: float
    last_check: float
    attempts: int = 0


class RateLimiter:
    """Token bucket limiter keyed by client address.

    ``rate`` is tokens per second, ``capacity`` the burst size. The bucket
    table is guarded by a single lock shared by request handling and the
    background sweep.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate
        self.capacity = capacity
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, Bucket] = {}
        self._scheduler: BackgroundScheduler | None = None

    def allow(self, address: str | None) -> tuple[bool, int]:
        """Consume a token for ``address``. Returns (allowed, attempts)."""
        if not address:
            return True, 0

        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(address)
            if bucket is None:
                bucket = Bucket(tokens=float(self.capacity), last_check=now)
                self._buckets[address] = bucket

            elapsed = max(0.0, now - bucket.last_check)
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.rate)
            bucket.last_check = now

            bucket.attempts += 1
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, bucket.attempts
            return False, bucket.attempts

    def reset(self, address: str | None) -> None:
        """Forget ``address`` entirely, e.g. after a successful PoW."""
        if not address:
            return
        with self._lock:
            self._buckets.pop(address, None)

    def sweep(self) -> int:
        """Drop buckets untouched for more than twice the sweep interval."""
        with self._lock:
            cutoff = self._clock() - 2 * self.sweep_interval
            stale = [key for key, b in self._buckets.items() if b.last_check < cutoff]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.info("buckets_swept", removed=len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def start(self) -> None:
        """Start the background sweep."""
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.sweep_interval),
            id="sweep_rate_limit_buckets",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("bucket_sweep_started", interval_seconds=self.sweep_interval)

    def shutdown(self) -> None:
        """Stop the background sweep."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("bucket_sweep_stopped")
