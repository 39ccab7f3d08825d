# FILE: atg/pow.py
from __future__ import annotations

import hashlib
import logging
import secrets
import time
from typing import Any, Callable, Optional

from .storage import (
    TAKE_REDEEMED,
    Challenge,
    ChallengeStore,
)

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
MAX_NONCE_LEN = 128


def leading_zero_bits(digest: bytes) -> int:
    n = 0
    for b in digest:
        if b == 0:
            n += 8
            continue
        return n + (8 - b.bit_length())
    return n


def verify_solution(challenge: str, nonce: str, difficulty: int) -> bool:
    """sha256(challenge || nonce) must start with `difficulty` zero bits."""
    if difficulty <= 0:
        return True
    if not isinstance(nonce, str) or not nonce or len(nonce) > MAX_NONCE_LEN:
        return False
    digest = hashlib.sha256((challenge + nonce).encode("utf-8")).digest()
    return leading_zero_bits(digest) >= difficulty


def solve(challenge: str, difficulty: int, *, start: int = 0, max_iter: int = 1 << 24) -> str:
    """Brute-force a nonce; client-side helper for low difficulties."""
    for i in range(start, start + max_iter):
        nonce = str(i)
        if verify_solution(challenge, nonce, difficulty):
            return nonce
    raise RuntimeError(f"no solution within {max_iter} attempts")


class ProofOfWorkGate:
    """
    Issues single-use challenges and redeems solutions against a
    ChallengeStore. Difficulty is fixed per challenge at issue time, so a
    runtime change only affects challenges issued afterwards.
    """

    def __init__(
        self,
        store: ChallengeStore,
        *,
        ttl_s: float = 30.0,
        metrics: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_s = float(ttl_s)
        self.metrics = metrics
        self._clock = clock

    def issue(self, difficulty: int, *, ttl_s: Optional[float] = None) -> Challenge:
        now = self._clock()
        ch = Challenge(
            challenge=secrets.token_hex(CHALLENGE_BYTES),
            difficulty=int(difficulty),
            issued_at=now,
            expires_at=now + float(ttl_s if ttl_s is not None else self.ttl_s),
        )
        self.store.put(ch)
        if self.metrics is not None:
            self.metrics.record_pow("issued")
        return ch

    def redeem(self, challenge: str, nonce: str) -> str:
        """Returns the store's TAKE_* outcome for this attempt."""
        result = self.store.take(
            challenge,
            lambda ch: verify_solution(ch.challenge, nonce, ch.difficulty),
            self._clock(),
        )
        if self.metrics is not None:
            self.metrics.record_pow(result)
        if result != TAKE_REDEEMED:
            logger.debug("pow redemption failed", extra={"result": result})
        return result


__all__ = [
    "leading_zero_bits",
    "verify_solution",
    "solve",
    "ProofOfWorkGate",
]
