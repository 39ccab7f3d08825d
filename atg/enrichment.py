# FILE: atg/enrichment.py
from __future__ import annotations

"""
Post-admission enrichment. Enrichers attach advisory signals (a bounded score
adjustment and flags) to a decision; they never gate it. A failing enricher
contributes neutral output and is logged.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence, Tuple

from .collaborators import NEUTRAL_ENRICHMENT, Enricher, Enrichment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BehavioralProfile:
    behavior: float = 50.0
    provenance: float = 50.0
    activity: float = 50.0
    network: float = 50.0
    flags: Tuple[str, ...] = ()


_PROFILE_WEIGHTS = {
    "behavior": 0.3,
    "provenance": 0.25,
    "activity": 0.25,
    "network": 0.2,
}


def weighted_profile_score(p: BehavioralProfile) -> float:
    return sum(getattr(p, name) * w for name, w in _PROFILE_WEIGHTS.items())


def adjustment_for(score: float) -> int:
    if score >= 80:
        return 10
    if score >= 60:
        return 5
    if score >= 40:
        return 0
    if score >= 20:
        return -5
    return -10


class BehavioralEnricher:
    """Maps a third-party behavioral profile onto a score adjustment."""

    name = "behavioral"

    def __init__(self, lookup: Callable[[str], Optional[BehavioralProfile]]) -> None:
        self._lookup = lookup

    def enrich(self, subject: str) -> Enrichment:
        profile = self._lookup(subject)
        if profile is None:
            return NEUTRAL_ENRICHMENT
        return Enrichment(
            score_adjustment=adjustment_for(weighted_profile_score(profile)),
            flags=tuple(profile.flags),
        )


class CredentialEnricher:
    """Boosts subjects holding a verified third-party credential."""

    name = "credential"

    def __init__(self, verify: Callable[[str], bool], *, boost: int = 15) -> None:
        self._verify = verify
        self.boost = int(boost)

    def enrich(self, subject: str) -> Enrichment:
        if not self._verify(subject):
            return NEUTRAL_ENRICHMENT
        return Enrichment(score_adjustment=self.boost, flags=("verified_credential",))


@dataclass(frozen=True)
class EnrichmentReport:
    score_adjustment: int = 0
    flags: Tuple[str, ...] = ()
    by_enricher: Dict[str, Enrichment] = field(default_factory=dict)
    failed: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "score_adjustment": self.score_adjustment,
            "flags": list(self.flags),
            "failed": list(self.failed),
        }


class EnrichmentPipeline:
    def __init__(self, enrichers: Sequence[Enricher] = ()) -> None:
        self.enrichers = tuple(enrichers)

    def run(self, subject: str) -> EnrichmentReport:
        results: Dict[str, Enrichment] = {}
        failed = []
        for enricher in self.enrichers:
            name = getattr(enricher, "name", type(enricher).__name__)
            try:
                results[name] = enricher.enrich(subject)
            except Exception:
                logger.warning(
                    "enricher failed; using neutral output",
                    extra={"enricher": name, "subject": subject},
                    exc_info=True,
                )
                results[name] = NEUTRAL_ENRICHMENT
                failed.append(name)

        flags = []
        for r in results.values():
            for f in r.flags:
                if f not in flags:
                    flags.append(f)
        return EnrichmentReport(
            score_adjustment=sum(r.score_adjustment for r in results.values()),
            flags=tuple(flags),
            by_enricher=results,
            failed=tuple(failed),
        )


__all__ = [
    "BehavioralProfile",
    "weighted_profile_score",
    "adjustment_for",
    "BehavioralEnricher",
    "CredentialEnricher",
    "EnrichmentReport",
    "EnrichmentPipeline",
]
