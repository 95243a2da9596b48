import pytest

from wisdom.config import Settings
from wisdom.services.rate_limiter import RateLimiter
from tests.test_utils import FakeClock


@pytest.fixture
def settings():
    """Server settings bound to an ephemeral localhost port with low difficulty."""
    return Settings(
        addr="127.0.0.1:0",
        bits=8,
        expires=60,
        conn_timeout=10.0,
        rate_limit=0,
        adaptive_bits=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    """A limiter with burst 2 and a frozen clock, so nothing refills unless advanced."""
    return RateLimiter(rate=1, capacity=2, sweep_interval=60.0, clock=clock)
