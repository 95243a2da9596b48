#!/usr/bin/env python3
"""
Smoke test for Word of Wisdom deployments.

This script is intentionally a deploy guardrail:
- Fast (seconds at the default difficulty)
- Self-contained (stdlib only, speaks the wire protocol directly)
- Actionable failures (step name plus the server's reply)

Flow (default):
1. Reachability (wait for the listener to accept)
2. Quote flow (challenge -> solve -> solution -> quote)
3. Invalid solution is rejected with an insufficient PoW error
4. Garbage input is rejected and the connection closed
5. Rate limiting (optional via --check-rate-limit)

Usage:
    ./scripts/smoke-test.py 127.0.0.1:8080
    ./scripts/smoke-test.py staging.example.com:8080 --check-rate-limit 20
"""

import argparse
import hashlib
import json
import socket
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_SOLVE_ITERATIONS = 50_000_000
REACHABILITY_DELAY_SECONDS = 1.0


def log(msg: str) -> None:
    """Print timestamped log message."""
    print(f"[{datetime.now().strftime('%H:%M:%S')}] {msg}", flush=True)


def leading_zero_bits(digest: bytes) -> int:
    value = int.from_bytes(digest, "big")
    return len(digest) * 8 - value.bit_length()


def solve_pow(challenge: dict[str, Any]) -> str:
    """Solve a challenge sequentially. Returns the winning nonce."""
    prefix = ":".join(
        str(challenge[key])
        for key in ("ver", "alg", "bits", "ts", "expires_in", "resource", "salt")
    )
    for counter in range(MAX_SOLVE_ITERATIONS):
        nonce = str(counter)
        digest = hashlib.sha256(f"{prefix}:{nonce}".encode()).digest()
        if leading_zero_bits(digest) >= challenge["bits"]:
            return nonce

    raise RuntimeError("Failed to solve PoW within iteration limit")


class Connection:
    """One JSON-lines TCP connection to the server."""

    def __init__(self, host: str, port: int, timeout: float):
        self.sock = socket.create_connection((host, port), timeout=timeout)
        self.stream = self.sock.makefile("rwb")

    def receive(self) -> dict[str, Any]:
        line = self.stream.readline()
        if not line:
            raise RuntimeError("Server closed the connection")
        return json.loads(line)

    def send(self, payload: dict[str, Any] | bytes) -> None:
        data = payload if isinstance(payload, bytes) else json.dumps(payload).encode() + b"\n"
        self.stream.write(data)
        self.stream.flush()

    def at_eof(self) -> bool:
        return self.stream.read() == b""

    def close(self) -> None:
        self.stream.close()
        self.sock.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class SmokeContext:
    host: str
    port: int
    timeout: float
    max_attempts: int
    rate_limit_burst: int | None = None

    def connect(self) -> Connection:
        return Connection(self.host, self.port, self.timeout)

    def receive_challenge(self, conn: Connection) -> dict[str, Any]:
        message = conn.receive()
        if message.get("type") != "challenge":
            raise RuntimeError(f"Expected challenge, got: {message}")
        return message["challenge"]


@dataclass(frozen=True)
class Step:
    name: str
    run: Callable[[SmokeContext], None]


def run_steps(ctx: SmokeContext, steps: list[Step]) -> bool:
    overall_start = time.time()

    for step in steps:
        log(f"STEP: {step.name}")
        start = time.time()
        try:
            step.run(ctx)
        except Exception as e:
            log(f"FAILED: {step.name} ({time.time() - start:.2f}s) - {e}")
            return False
        log(f"OK: {step.name} ({time.time() - start:.2f}s)")

    log(f"Total: {time.time() - overall_start:.2f}s")
    return True


def step_reachable(ctx: SmokeContext) -> None:
    for attempt in range(1, ctx.max_attempts + 1):
        try:
            socket.create_connection((ctx.host, ctx.port), timeout=ctx.timeout).close()
            return
        except OSError as e:
            log(f"  attempt {attempt}/{ctx.max_attempts}: {e}")
            time.sleep(REACHABILITY_DELAY_SECONDS)
    raise RuntimeError(f"{ctx.host}:{ctx.port} is not accepting connections")


def step_quote_flow(ctx: SmokeContext) -> None:
    with ctx.connect() as conn:
        challenge = ctx.receive_challenge(conn)
        log(f"  challenge bits={challenge['bits']} expires_in={challenge['expires_in']}")

        start = time.time()
        nonce = solve_pow(challenge)
        log(f"  solved nonce={nonce} in {time.time() - start:.2f}s")

        conn.send({"type": "solution", "nonce": nonce})
        response = conn.receive()
        if response.get("type") != "quote" or not response.get("quote"):
            raise RuntimeError(f"Expected quote, got: {response}")
        log(f"  quote: {response['quote']}")


def step_invalid_solution(ctx: SmokeContext) -> None:
    with ctx.connect() as conn:
        ctx.receive_challenge(conn)
        conn.send({"type": "solution", "nonce": "invalid-nonce-12345"})
        response = conn.receive()
        if response.get("type") != "error" or "insufficient PoW" not in response.get("error", ""):
            raise RuntimeError(f"Expected insufficient PoW error, got: {response}")
        if not conn.at_eof():
            raise RuntimeError("Server kept the connection open after rejecting")


def step_garbage(ctx: SmokeContext) -> None:
    with ctx.connect() as conn:
        ctx.receive_challenge(conn)
        conn.send(b"THIS IS NOT VALID JSON !!!\n")
        response = conn.receive()
        if response.get("type") != "error":
            raise RuntimeError(f"Expected error, got: {response}")


def step_rate_limit(ctx: SmokeContext) -> None:
    for i in range(1, ctx.rate_limit_burst + 1):
        with ctx.connect() as conn:
            message = conn.receive()
        if message.get("type") == "error" and "rate limit" in message.get("error", ""):
            log(f"  rate limited after {i} connections")
            return
    raise RuntimeError(f"No rate limit error after {ctx.rate_limit_burst} connections")


def main() -> int:
    parser = argparse.ArgumentParser(description="Word of Wisdom smoke test")
    parser.add_argument("addr", help="Server address (e.g., 127.0.0.1:8080)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"Socket timeout seconds (default: {DEFAULT_TIMEOUT_SECONDS:g})",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=30,
        help="Max reachability attempts (default: 30)",
    )
    parser.add_argument(
        "--check-rate-limit",
        type=int,
        metavar="BURST",
        help="Open up to BURST connections and expect a rate limit error",
    )
    args = parser.parse_args()

    try:
        host, _, port = args.addr.rpartition(":")
        ctx = SmokeContext(
            host=host or "127.0.0.1",
            port=int(port),
            timeout=args.timeout,
            max_attempts=args.max_attempts,
            rate_limit_burst=args.check_rate_limit,
        )

        steps = [
            Step("reachable", step_reachable),
            Step("quote flow", step_quote_flow),
            Step("invalid solution", step_invalid_solution),
            Step("garbage input", step_garbage),
        ]
        if args.check_rate_limit:
            steps.append(Step("rate limit", step_rate_limit))

        return 0 if run_steps(ctx, steps) else 1
    except Exception as e:
        log(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
