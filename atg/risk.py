# FILE: atg/risk.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .storage import RiskProfileStore, RiskSnapshot


@dataclass
class RiskConfig:
    """
    Additive behavioral risk score in [0, 100].

    Components (each evaluated independently, then summed and capped):

      burst:
        requests in the last minute; > burst_high adds 20, > burst_low adds 10.

      failures:
        recorded failed interactions; > failures_high adds 30,
        > failures_low adds 15.

      flags:
        flag_weight per abuse flag held.

      newcomer:
        fewer than newcomer_requests retained requests adds newcomer_penalty.

      payload:
        payload_size strictly above payload_risk_bytes adds payload_penalty.

      off_hours:
        local hour within [off_hours_start, off_hours_end] adds
        off_hours_penalty (0 disables the component).

    A subject is blocked when the score is strictly above block_threshold or
    when it holds at least block_flags abuse flags.
    """

    burst_low: int = 10
    burst_high: int = 30
    failures_low: int = 5
    failures_high: int = 10
    flag_weight: int = 10
    newcomer_requests: int = 5
    newcomer_penalty: int = 15
    payload_risk_bytes: int = 100_000
    payload_penalty: int = 20
    off_hours_penalty: int = 0
    off_hours_start: int = 2
    off_hours_end: int = 5
    block_threshold: int = 80
    block_flags: int = 3


@dataclass(frozen=True)
class RiskAssessment:
    subject: str
    score: int
    blocked: bool
    flag_count: int
    components: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "score": self.score,
            "blocked": self.blocked,
            "flags": self.flag_count,
            "components": dict(self.components),
        }


def _tiered(value: int, low: int, high: int, low_add: int, high_add: int) -> int:
    if value > high:
        return high_add
    if value > low:
        return low_add
    return 0


def score_snapshot(
    snap: RiskSnapshot,
    cfg: RiskConfig,
    *,
    payload_size: int = 0,
    local_hour: Optional[int] = None,
) -> Tuple[int, Dict[str, int]]:
    """Pure scoring function over a snapshot; returns (score, components)."""
    comps: Dict[str, int] = {
        "burst": _tiered(snap.requests_last_minute, cfg.burst_low, cfg.burst_high, 10, 20),
        "failures": _tiered(snap.failures, cfg.failures_low, cfg.failures_high, 15, 30),
        "flags": cfg.flag_weight * snap.flag_count,
        "newcomer": cfg.newcomer_penalty if snap.requests_retained < cfg.newcomer_requests else 0,
        "payload": cfg.payload_penalty if payload_size > cfg.payload_risk_bytes else 0,
        "off_hours": 0,
    }
    if (
        cfg.off_hours_penalty > 0
        and local_hour is not None
        and cfg.off_hours_start <= local_hour <= cfg.off_hours_end
    ):
        comps["off_hours"] = cfg.off_hours_penalty
    return min(sum(comps.values()), 100), comps


class RiskScorer:
    """
    Reads and writes a RiskProfileStore. Idle profiles are purged at most
    once per `purge_interval_s`, piggybacked on recorded requests.
    """

    def __init__(
        self,
        store: RiskProfileStore,
        config: Optional[RiskConfig] = None,
        *,
        purge_interval_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or RiskConfig()
        self.purge_interval_s = float(purge_interval_s)
        self._clock = clock
        self._purge_lock = threading.Lock()
        self._next_purge = 0.0

    def assess(
        self,
        subject: str,
        *,
        payload_size: int = 0,
        config: Optional[RiskConfig] = None,
    ) -> RiskAssessment:
        cfg = config or self.config
        now = self._clock()
        snap = self.store.snapshot(subject, now)
        score, comps = score_snapshot(
            snap,
            cfg,
            payload_size=max(0, int(payload_size or 0)),
            local_hour=time.localtime(now).tm_hour,
        )
        blocked = score > cfg.block_threshold or snap.flag_count >= cfg.block_flags
        return RiskAssessment(
            subject=subject,
            score=score,
            blocked=blocked,
            flag_count=snap.flag_count,
            components=comps,
        )

    def record_request(self, subject: str) -> int:
        now = self._clock()
        n = self.store.record_request(subject, now)
        self.maybe_purge(now)
        return n

    def maybe_purge(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._purge_lock:
            if now < self._next_purge:
                return 0
            self._next_purge = now + self.purge_interval_s
        return self.store.purge_idle(now)

    def record_failure(self, subject: str) -> int:
        return self.store.record_failure(subject)

    def flag(self, subject: str, reason: str) -> int:
        return self.store.add_flag(subject, reason, self._clock())


__all__ = ["RiskConfig", "RiskAssessment", "RiskScorer", "score_snapshot"]
