"""Shared test utilities."""

import asyncio
import json
from itertools import count

from wisdom.schemas.challenge import Challenge
from wisdom.services.pow_service import canonical_string, leading_zero_bits, pow_digest


class FakeClock:
    """Manually advanced monotonic clock for the rate limiter."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def failing_nonce(challenge: Challenge) -> str:
    """Return a nonce that does NOT meet the challenge difficulty."""
    challenge_str = canonical_string(challenge)
    for i in count():
        nonce = f"invalid-nonce-{i}"
        if leading_zero_bits(pow_digest(challenge_str, nonce)) < challenge.bits:
            return nonce


async def read_json(reader: asyncio.StreamReader, timeout: float = 5.0) -> dict:
    line = await asyncio.wait_for(reader.readline(), timeout)
    assert line, "connection closed before a message arrived"
    return json.loads(line)


async def send_json(writer: asyncio.StreamWriter, payload: dict) -> None:
    writer.write(json.dumps(payload).encode() + b"\n")
    await writer.drain()


async def assert_closed(reader: asyncio.StreamReader, timeout: float = 5.0) -> None:
    """The server side must have closed: reads observe end-of-stream."""
    data = await asyncio.wait_for(reader.read(), timeout)
    assert data == b""
