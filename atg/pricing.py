# FILE: atg/pricing.py
from __future__ import annotations

"""
Dynamic pricing: an ordered list of factor functions applied to a running
multiplier, then a floor at a fraction of the base price.

Each factor sees the same immutable PricingInput and returns (name, factor).
The order is part of the contract: the breakdown lists factors in the order
they were applied, and the floor is applied after all of them.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

PRICE_FLOOR_RATIO = 0.25
MICRO_UNITS = 1_000_000
DEFAULT_STAKE_CEILING = 2e18


@dataclass(frozen=True)
class PricingInput:
    base_price: float
    reputation: int
    risk: int
    stake: float = 0.0
    is_new: bool = False
    stake_ceiling: float = DEFAULT_STAKE_CEILING


@dataclass(frozen=True)
class PriceQuote:
    base_price: float
    multiplier: float
    final_price: float
    floored: bool
    breakdown: Tuple[Tuple[str, float], ...]

    @property
    def amount_micro(self) -> int:
        return int(round(self.final_price * MICRO_UNITS))

    def to_dict(self) -> Dict[str, object]:
        return {
            "base_price": self.base_price,
            "final_price": self.final_price,
            "multiplier": self.multiplier,
            "floored": self.floored,
            "breakdown": {name: factor for name, factor in self.breakdown},
        }


Factor = Callable[[PricingInput], Tuple[str, float]]


def reputation_factor(p: PricingInput) -> Tuple[str, float]:
    if p.reputation >= 90:
        return "reputation", 0.5
    if p.reputation >= 70:
        return "reputation", 0.75
    if p.reputation >= 50:
        return "reputation", 1.0
    return "reputation", 1.5


def risk_factor(p: PricingInput) -> Tuple[str, float]:
    if p.risk > 50:
        return "risk", 1.5
    if p.risk > 25:
        return "risk", 1.25
    return "risk", 1.0


def stake_factor(p: PricingInput) -> Tuple[str, float]:
    if p.stake <= 0 or p.stake_ceiling <= 0:
        return "stake", 1.0
    return "stake", 1.0 - 0.2 * min(p.stake / p.stake_ceiling, 1.0)


def newcomer_factor(p: PricingInput) -> Tuple[str, float]:
    return "new_subject", 1.25 if p.is_new else 1.0


DEFAULT_FACTORS: Tuple[Factor, ...] = (
    reputation_factor,
    risk_factor,
    stake_factor,
    newcomer_factor,
)


def compute_price(p: PricingInput, factors: Sequence[Factor] = DEFAULT_FACTORS) -> PriceQuote:
    multiplier = 1.0
    breakdown: List[Tuple[str, float]] = []
    for fn in factors:
        name, factor = fn(p)
        multiplier *= factor
        breakdown.append((name, factor))
    raw = p.base_price * multiplier
    floor = p.base_price * PRICE_FLOOR_RATIO
    final = max(raw, floor)
    return PriceQuote(
        base_price=p.base_price,
        multiplier=multiplier,
        final_price=final,
        floored=raw < floor,
        breakdown=tuple(breakdown),
    )


def calculate_price(
    base_price: float,
    reputation: int,
    risk: int,
    stake: float = 0.0,
    is_new: bool = False,
    *,
    stake_ceiling: float = DEFAULT_STAKE_CEILING,
) -> PriceQuote:
    return compute_price(
        PricingInput(
            base_price=float(base_price),
            reputation=int(reputation),
            risk=int(risk),
            stake=float(stake),
            is_new=bool(is_new),
            stake_ceiling=float(stake_ceiling),
        )
    )


# ---------------------------------------------------------------------------
# Service catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceOffer:
    name: str
    base_price: float
    min_reputation: int = 0
    min_stake: float = 0.0


DEFAULT_CATALOG: Tuple[ServiceOffer, ...] = (
    ServiceOffer("gpt4-premium", 0.05, min_reputation=80, min_stake=1e18),
    ServiceOffer("claude-standard", 0.02, min_reputation=50, min_stake=1e17),
    ServiceOffer("data-feed", 0.001),
    ServiceOffer("agent-discovery", 0.01, min_reputation=70, min_stake=5e17),
)


def catalog_by_name(offers: Sequence[ServiceOffer]) -> Mapping[str, ServiceOffer]:
    return {o.name: o for o in offers}


def payment_terms(
    quote: PriceQuote,
    *,
    pay_to: str,
    asset: str,
    network: str,
    max_timeout_s: int,
    resource: Optional[str] = None,
) -> Dict[str, object]:
    terms: Dict[str, object] = {
        "scheme": "exact",
        "network": network,
        "amount": str(quote.amount_micro),
        "asset": asset,
        "pay_to": pay_to,
        "max_timeout_s": int(max_timeout_s),
        "description": f"API access - {quote.final_price:.4f} {asset}",
    }
    if resource:
        terms["resource"] = resource
    return terms


__all__ = [
    "PRICE_FLOOR_RATIO",
    "MICRO_UNITS",
    "PricingInput",
    "PriceQuote",
    "Factor",
    "DEFAULT_FACTORS",
    "compute_price",
    "calculate_price",
    "ServiceOffer",
    "DEFAULT_CATALOG",
    "catalog_by_name",
    "payment_terms",
]
