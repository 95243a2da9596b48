import hashlib
import secrets
import time

from wisdom.schemas.challenge import ALGORITHM, PROTOCOL_VERSION, Challenge

SALT_BYTES = 16  # 128 bits


class VerificationError(ValueError):
    """A submitted solution was rejected."""


class ResourceMismatchError(VerificationError):
    pass


class ChallengeNotYetValidError(VerificationError):
    pass


class ChallengeExpiredError(VerificationError):
    pass


class InsufficientWorkError(VerificationError):
    pass


class SolveExhaustedError(RuntimeError):
    pass


def generate_challenge(
    bits: int, expires_in: int, resource: str, now: int | None = None
) -> Challenge:
    """Generate a new proof-of-work challenge with a fresh random salt."""
    return Challenge(
        ver=PROTOCOL_VERSION,
        alg=ALGORITHM,
        bits=bits,
        ts=int(time.time()) if now is None else now,
        expires_in=expires_in,
        resource=resource,
        salt=secrets.token_hex(SALT_BYTES),
    )


def canonical_string(challenge: Challenge) -> str:
    """Return the string that gets hashed: ``ver:alg:bits:ts:expires_in:resource:salt``."""
    return ":".join(
        (
            challenge.ver,
            challenge.alg,
            str(challenge.bits),
            str(challenge.ts),
            str(challenge.expires_in),
            challenge.resource,
            challenge.salt,
        )
    )


def pow_digest(challenge_str: str, nonce: str) -> bytes:
    return hashlib.sha256(f"{challenge_str}:{nonce}".encode()).digest()


def leading_zero_bits(digest: bytes) -> int:
    """Count leading zero bits, scanning from the most significant bit."""
    zeros = 0
    for byte in digest:
        if byte == 0:
            zeros += 8
            continue
        # Count bits in first non-zero byte
        for bit in range(7, -1, -1):
            if (byte >> bit) & 1 == 0:
                zeros += 1
            else:
                break
        break
    return zeros


def solve(challenge: Challenge, max_iterations: int) -> str:
    """
    Find a nonce by brute force, trying ``0, 1, 2, ...`` in order.

    Raises SolveExhaustedError if nothing is found within max_iterations.
    """
    challenge_str = canonical_string(challenge)

    for i in range(max_iterations):
        nonce = str(i)
        if leading_zero_bits(pow_digest(challenge_str, nonce)) >= challenge.bits:
            return nonce

    raise SolveExhaustedError(f"no solution found within {max_iterations} iterations")


def verify(
    challenge: Challenge, nonce: str, expected_resource: str, now: int | None = None
) -> bool:
    """
    Verify a proof-of-work solution.

    Returns True if valid, raises a VerificationError subclass naming the
    first failed check otherwise.
    """
    if challenge.resource != expected_resource:
        raise ResourceMismatchError(
            f"resource mismatch: expected {expected_resource}, got {challenge.resource}"
        )

    # now must be in [ts, ts + expires_in]
    if now is None:
        now = int(time.time())
    if now < challenge.ts:
        raise ChallengeNotYetValidError(
            f"challenge not yet valid: ts={challenge.ts}, now={now}"
        )
    if now > challenge.ts + challenge.expires_in:
        raise ChallengeExpiredError(
            f"challenge expired: ts={challenge.ts}, now={now}, "
            f"expires_in={challenge.expires_in}"
        )

    actual_bits = leading_zero_bits(pow_digest(canonical_string(challenge), nonce))
    if actual_bits < challenge.bits:
        raise InsufficientWorkError(
            f"insufficient PoW: expected {challenge.bits} leading zero bits, got {actual_bits}"
        )

    return True
