# FILE: atg/storage.py
"""
Process-local state stores for the request-time pipeline:

  - RiskProfileStore:
      Per-subject rolling request timestamps (one hour retained), failure
      counter and abuse flags. Writes append then prune under the subject's
      own lock; get-or-create is atomic.

  - ChallengeStore:
      Outstanding proof-of-work challenges. Redemption is an atomic
      check-and-remove: a challenge is removed only when the presented
      solution verifies (or when it has expired), never on a wrong nonce.

  - SessionStateStore:
      Server-side half of session credentials: request counters, cumulative
      cost and the revocation set. Every entry is purged once the credential
      it belongs to can no longer verify.

Stores are owned by one gateway instance and injected; there are no module
level singletons. Expiry is plain wall-clock comparison against the clock
the caller passes in.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

RISK_WINDOW_S = 3600.0
BURST_WINDOW_S = 60.0


# ------------------------------
# Risk profiles
# ------------------------------


@dataclass(frozen=True)
class AbuseFlag:
    reason: str
    timestamp: float


@dataclass(frozen=True)
class RiskSnapshot:
    """Read-only view of a profile at a point in time."""

    subject: str
    requests_last_minute: int
    requests_retained: int
    failures: int
    flags: Tuple[AbuseFlag, ...] = ()

    @property
    def flag_count(self) -> int:
        return len(self.flags)


@dataclass
class _Profile:
    lock: threading.Lock = field(default_factory=threading.Lock)
    requests: Deque[float] = field(default_factory=deque)
    failures: int = 0
    flags: List[AbuseFlag] = field(default_factory=list)
    # Set under `lock` once purged; writers holding a stale reference retry.
    dead: bool = False

    def prune(self, now: float) -> None:
        horizon = now - RISK_WINDOW_S
        while self.requests and self.requests[0] < horizon:
            self.requests.popleft()


class RiskProfileStore(ABC):
    @abstractmethod
    def record_request(self, subject: str, ts: float) -> int:
        """Append a request timestamp; returns the retained request count."""

    @abstractmethod
    def record_failure(self, subject: str) -> int:
        """Increment the failure counter; returns the new value."""

    @abstractmethod
    def add_flag(self, subject: str, reason: str, ts: float) -> int:
        """Attach an abuse flag; returns the number of flags now held."""

    @abstractmethod
    def snapshot(self, subject: str, now: float) -> RiskSnapshot:
        """Counts as of `now`; does not create a profile."""

    @abstractmethod
    def purge_idle(self, now: float) -> int:
        """Drop profiles with no retained requests, failures or flags."""


class InMemoryRiskProfileStore(RiskProfileStore):
    def __init__(self) -> None:
        self._g = threading.Lock()
        self._profiles: Dict[str, _Profile] = {}

    def _profile(self, subject: str) -> _Profile:
        with self._g:
            prof = self._profiles.get(subject)
            if prof is None:
                prof = _Profile()
                self._profiles[subject] = prof
            return prof

    def _update(self, subject: str, fn: Callable[[_Profile], int]) -> int:
        while True:
            prof = self._profile(subject)
            with prof.lock:
                if not prof.dead:
                    return fn(prof)

    def record_request(self, subject: str, ts: float) -> int:
        def _append(prof: _Profile) -> int:
            prof.requests.append(float(ts))
            prof.prune(ts)
            return len(prof.requests)

        return self._update(subject, _append)

    def record_failure(self, subject: str) -> int:
        def _inc(prof: _Profile) -> int:
            prof.failures += 1
            return prof.failures

        return self._update(subject, _inc)

    def add_flag(self, subject: str, reason: str, ts: float) -> int:
        def _add(prof: _Profile) -> int:
            prof.flags.append(AbuseFlag(reason=reason, timestamp=float(ts)))
            return len(prof.flags)

        return self._update(subject, _add)

    def snapshot(self, subject: str, now: float) -> RiskSnapshot:
        with self._g:
            prof = self._profiles.get(subject)
        if prof is None:
            return RiskSnapshot(subject=subject, requests_last_minute=0, requests_retained=0, failures=0)
        with prof.lock:
            hour = now - RISK_WINDOW_S
            minute = now - BURST_WINDOW_S
            retained = [t for t in prof.requests if t >= hour]
            return RiskSnapshot(
                subject=subject,
                requests_last_minute=sum(1 for t in retained if t >= minute),
                requests_retained=len(retained),
                failures=prof.failures,
                flags=tuple(prof.flags),
            )

    def purge_idle(self, now: float) -> int:
        with self._g:
            dead = []
            for k, prof in self._profiles.items():
                with prof.lock:
                    prof.prune(now)
                    if not prof.requests and not prof.failures and not prof.flags:
                        prof.dead = True
                        dead.append(k)
            for k in dead:
                self._profiles.pop(k, None)
        if dead:
            logger.debug("purged idle risk profiles", extra={"purged": len(dead)})
        return len(dead)

    def __len__(self) -> int:
        with self._g:
            return len(self._profiles)


# ------------------------------
# Proof-of-work challenges
# ------------------------------


@dataclass(frozen=True)
class Challenge:
    challenge: str
    difficulty: int
    issued_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now > self.expires_at


TAKE_REDEEMED = "redeemed"
TAKE_INVALID = "invalid"
TAKE_EXPIRED = "expired"
TAKE_UNKNOWN = "unknown"


class ChallengeStore(ABC):
    @abstractmethod
    def put(self, challenge: Challenge) -> None:
        ...

    @abstractmethod
    def take(
        self,
        challenge: str,
        verify: Callable[[Challenge], bool],
        now: float,
    ) -> str:
        """
        Atomically verify and remove. Returns one of TAKE_REDEEMED,
        TAKE_INVALID (challenge kept), TAKE_EXPIRED (removed) or TAKE_UNKNOWN.
        """

    @abstractmethod
    def purge_expired(self, now: float) -> int:
        ...


class InMemoryChallengeStore(ChallengeStore):
    def __init__(self, *, max_outstanding: int = 100_000) -> None:
        self._g = threading.Lock()
        self._items: Dict[str, Challenge] = {}
        self._max = int(max_outstanding)

    def put(self, challenge: Challenge) -> None:
        with self._g:
            if len(self._items) >= self._max:
                self._purge_locked(challenge.issued_at)
            if len(self._items) >= self._max:
                # Oldest first: dicts keep insertion order.
                oldest = next(iter(self._items))
                self._items.pop(oldest, None)
            self._items[challenge.challenge] = challenge

    def take(
        self,
        challenge: str,
        verify: Callable[[Challenge], bool],
        now: float,
    ) -> str:
        with self._g:
            item = self._items.get(challenge)
            if item is None:
                return TAKE_UNKNOWN
            if item.expired(now):
                self._items.pop(challenge, None)
                return TAKE_EXPIRED
            if not verify(item):
                return TAKE_INVALID
            self._items.pop(challenge, None)
            return TAKE_REDEEMED

    def _purge_locked(self, now: float) -> int:
        dead = [k for k, c in self._items.items() if c.expired(now)]
        for k in dead:
            self._items.pop(k, None)
        return len(dead)

    def purge_expired(self, now: float) -> int:
        with self._g:
            return self._purge_locked(now)

    def __contains__(self, challenge: object) -> bool:
        with self._g:
            return challenge in self._items

    def __len__(self) -> int:
        with self._g:
            return len(self._items)


# ------------------------------
# Session state
# ------------------------------


@dataclass
class SessionState:
    session_id: str
    expires_at: float
    request_count: int = 0
    cumulative_cost: float = 0.0


CONSUME_OK = "ok"
CONSUME_REVOKED = "revoked"
CONSUME_EXHAUSTED = "max_requests"
CONSUME_COST = "max_cost"


class SessionStateStore(ABC):
    @abstractmethod
    def register(self, session_id: str, *, expires_at: float, request_count: int = 0) -> None:
        ...

    @abstractmethod
    def get(self, session_id: str) -> Optional[SessionState]:
        ...

    @abstractmethod
    def consume(
        self,
        session_id: str,
        *,
        expires_at: float,
        floor_count: int,
        max_requests: int,
        cost: float,
        max_cost: float,
    ) -> Tuple[str, Optional[SessionState]]:
        """
        Atomically check the caveats that need server state and, when they
        hold, count one more request. Returns (CONSUME_*, state after).
        """

    @abstractmethod
    def revoke(self, session_id: str, *, until: float) -> None:
        ...

    @abstractmethod
    def is_revoked(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def purge_expired(self, now: float) -> int:
        ...


class InMemorySessionStateStore(SessionStateStore):
    def __init__(self) -> None:
        self._g = threading.RLock()
        self._states: Dict[str, SessionState] = {}
        # session_id -> keep-until timestamp
        self._revoked: Dict[str, float] = {}

    def register(self, session_id: str, *, expires_at: float, request_count: int = 0) -> None:
        with self._g:
            self._states[session_id] = SessionState(
                session_id=session_id,
                expires_at=float(expires_at),
                request_count=int(request_count),
            )

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._g:
            st = self._states.get(session_id)
            if st is None:
                return None
            return SessionState(
                session_id=st.session_id,
                expires_at=st.expires_at,
                request_count=st.request_count,
                cumulative_cost=st.cumulative_cost,
            )

    def consume(
        self,
        session_id: str,
        *,
        expires_at: float,
        floor_count: int,
        max_requests: int,
        cost: float,
        max_cost: float,
    ) -> Tuple[str, Optional[SessionState]]:
        with self._g:
            if session_id in self._revoked:
                return CONSUME_REVOKED, None
            st = self._states.get(session_id)
            if st is None:
                st = SessionState(session_id=session_id, expires_at=float(expires_at))
                self._states[session_id] = st
            # The credential's own counter is a lower bound: never go backwards.
            st.request_count = max(st.request_count, int(floor_count))
            if st.request_count >= max_requests:
                return CONSUME_EXHAUSTED, self.get(session_id)
            if st.cumulative_cost + cost > max_cost + 1e-12:
                return CONSUME_COST, self.get(session_id)
            st.request_count += 1
            st.cumulative_cost += cost
            return CONSUME_OK, self.get(session_id)

    def revoke(self, session_id: str, *, until: float) -> None:
        with self._g:
            st = self._states.get(session_id)
            keep = max(float(until), st.expires_at if st is not None else 0.0)
            self._revoked[session_id] = max(keep, self._revoked.get(session_id, 0.0))

    def is_revoked(self, session_id: str) -> bool:
        with self._g:
            return session_id in self._revoked

    def purge_expired(self, now: float) -> int:
        with self._g:
            dead_states = [k for k, s in self._states.items() if s.expires_at < now]
            for k in dead_states:
                self._states.pop(k, None)
            dead_rev = [k for k, t in self._revoked.items() if t < now]
            for k in dead_rev:
                self._revoked.pop(k, None)
        n = len(dead_states) + len(dead_rev)
        if n:
            logger.debug("purged session state", extra={"purged": n})
        return n

    def counts(self) -> Dict[str, int]:
        with self._g:
            return {"active": len(self._states), "revoked": len(self._revoked)}


__all__ = [
    "RISK_WINDOW_S",
    "BURST_WINDOW_S",
    "AbuseFlag",
    "RiskSnapshot",
    "RiskProfileStore",
    "InMemoryRiskProfileStore",
    "Challenge",
    "ChallengeStore",
    "InMemoryChallengeStore",
    "TAKE_REDEEMED",
    "TAKE_INVALID",
    "TAKE_EXPIRED",
    "TAKE_UNKNOWN",
    "SessionState",
    "SessionStateStore",
    "InMemorySessionStateStore",
    "CONSUME_OK",
    "CONSUME_REVOKED",
    "CONSUME_EXHAUSTED",
    "CONSUME_COST",
]
