"""
Parallel brute-force solver for PoW challenges.

Hashing is CPU bound, so every worker runs in its own process. Worker ``i``
of ``N`` tries nonces ``i, i+N, i+2N, ...``; the first worker to find a valid
nonce stores it in a shared slot and raises the stop event for everyone else.
"""

import multiprocessing
import os
import time

from wisdom.logging_config import get_logger
from wisdom.schemas.challenge import Challenge
from wisdom.services.pow_service import canonical_string, leading_zero_bits, pow_digest

logger = get_logger(__name__)

# Workers poll the stop event once per this many hashes.
CANCEL_CHECK_INTERVAL = 4096
JOIN_TIMEOUT_SECONDS = 2.0
POLL_SECONDS = 0.1
NO_WINNER = -1


class SolveTimeoutError(TimeoutError):
    pass


def _search(challenge_str, bits, start, step, stop, winner):
    nonce = start
    checked = 0
    while True:
        if checked % CANCEL_CHECK_INTERVAL == 0 and stop.is_set():
            return
        if leading_zero_bits(pow_digest(challenge_str, str(nonce))) >= bits:
            with winner.get_lock():
                if winner.value == NO_WINNER:
                    winner.value = nonce
            stop.set()
            return
        nonce += step
        checked += 1


def _poll_interval(deadline: float | None) -> float:
    if deadline is None:
        return POLL_SECONDS
    return max(0.0, min(POLL_SECONDS, deadline - time.perf_counter()))


def default_workers() -> int:
    """CPUs this process may run on, honouring affinity masks where supported."""
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)))
    return max(1, os.cpu_count() or 1)


def solve_parallel(
    challenge: Challenge, timeout: float | None = None, workers: int | None = None
) -> str:
    """
    Find a valid nonce using a pool of worker processes.

    Blocks until a worker succeeds or ``timeout`` seconds elapse, in which
    case SolveTimeoutError is raised. No worker outlives the call.
    """
    workers = max(1, workers or default_workers())
    challenge_str = canonical_string(challenge)

    # Callers may be threaded (asyncio.to_thread), so never fork
    ctx = multiprocessing.get_context("spawn")
    stop = ctx.Event()
    winner = ctx.Value("q", NO_WINNER)

    logger.debug("solver_started", workers=workers, bits=challenge.bits)
    started = time.perf_counter()

    procs = [
        ctx.Process(
            target=_search,
            args=(challenge_str, challenge.bits, worker_id, workers, stop, winner),
            daemon=True,
        )
        for worker_id in range(workers)
    ]
    deadline = None if timeout is None else started + timeout
    try:
        for proc in procs:
            proc.start()
        while not stop.wait(_poll_interval(deadline)):
            if deadline is not None and time.perf_counter() >= deadline:
                break
            if not any(proc.is_alive() for proc in procs):
                break
    finally:
        stop.set()
        for proc in procs:
            if proc.pid is None:
                continue
            proc.join(JOIN_TIMEOUT_SECONDS)
            if proc.is_alive():
                proc.terminate()
                proc.join()

    with winner.get_lock():
        nonce = winner.value

    if nonce == NO_WINNER:
        raise SolveTimeoutError(f"no solution found within {timeout} seconds")

    logger.debug(
        "solver_finished",
        nonce=nonce,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return str(nonce)
