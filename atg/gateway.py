# FILE: atg/gateway.py
from __future__ import annotations

"""
Request-time admission control.

The pipeline runs in a fixed order and the first triggered outcome wins:

  1. session fast path       (valid credential -> admitted)
  2. proof-of-work gate      (difficulty > 0, no valid solution -> challenge-required)
  3. identity resolution     (oversized input / unregistered / identity_required -> denied)
  4. risk scoring            (blocked -> denied, excessive_risk)
  5. minimum-bar checks      (stake, aggregated reputation)
  6. dynamic pricing
  7. payment check           (no evidence -> payment-required)
  8. admission               (record request, issue session credential)

Challenge-required and payment-required are decision states, not errors.
Internal faults yield an `error` outcome with a generic reason; the detail
goes to the log only.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .collaborators import (
    PaymentVerifier,
    StakeProvider,
    SubjectRegistry,
    normalize_identifier,
)
from .enrichment import EnrichmentPipeline, EnrichmentReport
from .errors import (
    ExcessiveRisk,
    InsufficientReputation,
    InsufficientStake,
    PolicyRejection,
    SessionInvalid,
)
from .kv import decision_id_hash
from .ledger import FeedbackRecord, ReputationLedger, tier_for
from .logging import bind, log_decision, log_security_event
from .pow import ProofOfWorkGate
from .pricing import (
    DEFAULT_CATALOG,
    PriceQuote,
    PricingInput,
    ServiceOffer,
    compute_price,
    payment_terms,
)
from .risk import RiskAssessment, RiskConfig, RiskScorer
from .session import SessionManager
from .storage import (
    TAKE_REDEEMED,
    Challenge,
    ChallengeStore,
    RiskProfileStore,
    SessionStateStore,
)
from .sync import CrossDomainSync

logger = logging.getLogger(__name__)

ANONYMOUS_SUBJECT = "anonymous"
MAX_IDENTIFIER_LEN = 256
MAX_PATH_LEN = 1024


class Outcome(str, Enum):
    CHALLENGE_REQUIRED = "challenge-required"
    PAYMENT_REQUIRED = "payment-required"
    DENIED = "denied"
    ADMITTED = "admitted"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayPolicy:
    """Admission knobs; a snapshot is taken once per evaluated request."""

    base_price: float = 0.01
    min_stake: float = 0.0
    min_score: int = 0
    require_registration: bool = True
    require_stake: bool = False
    stake_ceiling: float = 2e18

    risk_block_threshold: int = 80
    risk_block_flags: int = 3
    payload_risk_bytes: int = 100_000
    off_hours_penalty: int = 0

    pow_difficulty: int = 0
    pow_ttl_s: float = 30.0

    session_ttl_s: float = 300.0
    session_max_requests: int = 100
    session_max_cost: float = 1.0

    remote_domains: Tuple[str, ...] = ()

    pay_to: str = ""
    asset: str = "USDC"
    network: str = "base-sepolia"
    payment_timeout_s: int = 60

    @classmethod
    def from_settings(cls, s: Any) -> "GatewayPolicy":
        return cls(
            base_price=float(s.base_price),
            min_stake=float(s.min_stake),
            min_score=int(s.min_score),
            require_registration=bool(s.require_registration),
            require_stake=bool(s.require_stake),
            stake_ceiling=float(s.stake_ceiling),
            risk_block_threshold=int(s.risk_block_threshold),
            risk_block_flags=int(s.risk_block_flags),
            payload_risk_bytes=int(s.payload_risk_bytes),
            off_hours_penalty=int(s.off_hours_penalty),
            pow_difficulty=int(s.pow_difficulty),
            pow_ttl_s=float(s.pow_ttl_s),
            session_ttl_s=float(s.session_ttl_s),
            session_max_requests=int(s.session_max_requests),
            session_max_cost=float(s.session_max_cost),
            remote_domains=tuple(s.remote_domain_list()),
            pay_to=str(s.pay_to),
            asset=str(s.asset),
            network=str(s.network),
            payment_timeout_s=int(s.payment_timeout_s),
        )

    def risk_config(self) -> RiskConfig:
        return RiskConfig(
            payload_risk_bytes=self.payload_risk_bytes,
            off_hours_penalty=self.off_hours_penalty,
            block_threshold=self.risk_block_threshold,
            block_flags=self.risk_block_flags,
        )


# ---------------------------------------------------------------------------
# Request / decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessRequest:
    identifier: Optional[str] = None
    path: str = "/"
    session_credential: Optional[str] = None
    pow_challenge: Optional[str] = None
    pow_nonce: Optional[str] = None
    payment_evidence: Optional[str] = None
    payload_size: int = 0


@dataclass
class GatewayDecision:
    outcome: Outcome
    reason: str = ""
    subject: Optional[str] = None
    decision_id: str = ""
    reputation: Optional[int] = None
    risk: Optional[int] = None
    stake: Optional[float] = None
    price: Optional[PriceQuote] = None
    payment: Optional[Dict[str, Any]] = None
    payment_reference: str = ""
    challenge: Optional[Challenge] = None
    session: Optional[str] = None
    session_id: Optional[str] = None
    session_resumed: bool = False
    session_error: Optional[str] = None
    rejection: Optional[PolicyRejection] = None
    trust: Dict[str, Any] = field(default_factory=dict)
    risk_components: Dict[str, int] = field(default_factory=dict)
    enrichment: Optional[EnrichmentReport] = None

    @property
    def admitted(self) -> bool:
        return self.outcome is Outcome.ADMITTED

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "decision_id": self.decision_id,
        }
        if self.subject is not None:
            out["subject"] = self.subject
        if self.reputation is not None:
            out["reputation"] = self.reputation
        if self.risk is not None:
            out["risk"] = self.risk
        if self.stake is not None:
            out["stake"] = self.stake
        if self.trust:
            out["trust"] = dict(self.trust)
        if self.risk_components:
            out["risk_components"] = dict(self.risk_components)
        if self.price is not None:
            out["pricing"] = self.price.to_dict()
        if self.payment is not None:
            out["payment"] = dict(self.payment)
        if self.payment_reference:
            out["payment_reference"] = self.payment_reference
        if self.challenge is not None:
            out["challenge"] = {
                "challenge": self.challenge.challenge,
                "difficulty": self.challenge.difficulty,
                "expires_at": self.challenge.expires_at,
            }
        if self.session is not None:
            out["session"] = self.session
            out["session_id"] = self.session_id
            out["session_resumed"] = self.session_resumed
        if self.session_error:
            out["session_error"] = self.session_error
        if self.rejection is not None:
            out["rejection"] = self.rejection.to_dict()
        if self.enrichment is not None:
            out["enrichment"] = self.enrichment.to_dict()
        return out


# ---------------------------------------------------------------------------
# TrustGateway
# ---------------------------------------------------------------------------


class TrustGateway:
    def __init__(
        self,
        ledger: ReputationLedger,
        registry: SubjectRegistry,
        stake_provider: StakeProvider,
        *,
        risk_store: RiskProfileStore,
        challenge_store: ChallengeStore,
        session_store: SessionStateStore,
        session_key: bytes,
        sync: Optional[CrossDomainSync] = None,
        policy: Optional[GatewayPolicy] = None,
        policy_provider: Optional[Callable[[], GatewayPolicy]] = None,
        payment_verifier: Optional[PaymentVerifier] = None,
        enrichment: Optional[EnrichmentPipeline] = None,
        catalog: Sequence[ServiceOffer] = DEFAULT_CATALOG,
        metrics: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.stake_provider = stake_provider
        self.sync = sync
        self.payment_verifier = payment_verifier
        self.enrichment = enrichment
        self.catalog = tuple(catalog)
        self.metrics = metrics
        self._clock = clock

        fixed = policy or GatewayPolicy()
        self._policy_provider = policy_provider or (lambda: fixed)

        self.risk = RiskScorer(risk_store, clock=clock)
        self.pow = ProofOfWorkGate(challenge_store, metrics=metrics, clock=clock)
        self.sessions = SessionManager(session_store, session_key, metrics=metrics, clock=clock)

    @property
    def policy(self) -> GatewayPolicy:
        return self._policy_provider()

    # ----- trust views -----

    def _reputation(self, subject: str, policy: GatewayPolicy) -> int:
        if self.sync is not None:
            return self.sync.get_aggregated_score(subject, policy.remote_domains)
        return self.ledger.get_score(subject)

    def trust_breakdown(self, subject: str, policy: Optional[GatewayPolicy] = None) -> Dict[str, Any]:
        policy = policy or self.policy
        if self.sync is not None:
            out = self.sync.score_breakdown(subject, policy.remote_domains)
        else:
            local = self.ledger.get_score(subject)
            out = {"subject": subject, "local": local, "remotes": {}, "aggregated": local}
        out["tier"] = tier_for(out["aggregated"])
        out["feedback_count"] = self.ledger.get_feedback_count(subject)
        return out

    # ----- main entry -----

    def evaluate(self, req: AccessRequest) -> GatewayDecision:
        t0 = time.perf_counter()
        policy = self.policy
        try:
            decision = self._evaluate(req, policy)
        except Exception:
            logger.exception("admission pipeline failed", extra={"path": req.path})
            decision = GatewayDecision(outcome=Outcome.ERROR, reason="internal_error")

        try:
            decision.decision_id = decision_id_hash(
                subject=decision.subject or "",
                outcome=decision.outcome.value,
                reason=decision.reason,
                path=req.path,
                ts=self._clock(),
            )
        except ValueError:
            logger.exception("decision id hashing failed", extra={"outcome": decision.outcome.value})
            decision = GatewayDecision(outcome=Outcome.ERROR, reason="internal_error")
            decision.decision_id = secrets.token_hex(16)
        if self.metrics is not None:
            self.metrics.record_decision(
                decision.outcome.value,
                decision.reason,
                time.perf_counter() - t0,
                risk=decision.risk,
            )
        log_decision(
            logger,
            outcome=decision.outcome.value,
            reason=decision.reason,
            subject=decision.subject,
            reputation=decision.reputation,
            risk=decision.risk,
            price=decision.price.final_price if decision.price is not None else None,
            decision_id=decision.decision_id,
            extra={
                "session_id": decision.session_id,
                "session_error": decision.session_error,
            },
            level=logging.WARNING if decision.outcome is Outcome.ERROR else logging.INFO,
        )
        return decision

    def _evaluate(self, req: AccessRequest, policy: GatewayPolicy) -> GatewayDecision:
        # 1. session fast path
        session_error: Optional[str] = None
        if req.session_credential:
            try:
                cred, token = self.sessions.resume(req.session_credential, req.path)
            except SessionInvalid as exc:
                session_error = exc.reason
                logger.info(
                    "session credential rejected; running full pipeline",
                    extra={"session_id": exc.session_id, "reason": exc.reason},
                )
            else:
                bind(subject=cred.subject)
                self.risk.record_request(cred.subject)
                return GatewayDecision(
                    outcome=Outcome.ADMITTED,
                    reason="session",
                    subject=cred.subject,
                    session=token,
                    session_id=cred.session_id,
                    session_resumed=True,
                )

        def _decision(outcome: Outcome, reason: str, **kw: Any) -> GatewayDecision:
            return GatewayDecision(outcome=outcome, reason=reason, session_error=session_error, **kw)

        # 2. proof-of-work gate
        if policy.pow_difficulty > 0:
            solved = False
            if req.pow_challenge and req.pow_nonce:
                solved = self.pow.redeem(req.pow_challenge, req.pow_nonce) == TAKE_REDEEMED
            if not solved:
                challenge = self.pow.issue(policy.pow_difficulty, ttl_s=policy.pow_ttl_s)
                return _decision(Outcome.CHALLENGE_REQUIRED, "pow", challenge=challenge)

        # 3. identity resolution
        ident = normalize_identifier(req.identifier or "")
        if len(ident) > MAX_IDENTIFIER_LEN:
            return _decision(Outcome.DENIED, "invalid_identifier")
        if len(req.path) > MAX_PATH_LEN:
            return _decision(Outcome.DENIED, "invalid_path")
        if not ident:
            if policy.require_registration:
                return _decision(Outcome.DENIED, "identity_required")
            subject = ANONYMOUS_SUBJECT
        else:
            resolved = self.registry.resolve_subject_key(ident)
            if resolved is None:
                if policy.require_registration:
                    return _decision(Outcome.DENIED, "unregistered", subject=ident)
                subject = ident
            else:
                subject = resolved
        bind(subject=subject)

        # 4. risk
        assessment: RiskAssessment = self.risk.assess(
            subject,
            payload_size=req.payload_size,
            config=policy.risk_config(),
        )
        common: Dict[str, Any] = {
            "subject": subject,
            "risk": assessment.score,
            "risk_components": assessment.components,
        }
        if assessment.blocked:
            log_security_event(
                logger,
                threat_label="excessive_risk",
                subject=subject,
                severity=assessment.score / 100.0,
                extra={"flags": assessment.flag_count},
            )
            return _decision(
                Outcome.DENIED,
                "excessive_risk",
                rejection=ExcessiveRisk(
                    risk=assessment.score,
                    limit=policy.risk_block_threshold,
                    flags=assessment.flag_count,
                ),
                **common,
            )

        # 5. minimum bars
        stake = float(self.stake_provider.get_effective_stake(subject))
        common["stake"] = stake
        if policy.require_stake and stake <= 0:
            return _decision(
                Outcome.DENIED,
                "no_stake",
                rejection=InsufficientStake(required=max(policy.min_stake, 0.0), current=stake),
                **common,
            )
        if stake < policy.min_stake:
            return _decision(
                Outcome.DENIED,
                "insufficient_stake",
                rejection=InsufficientStake(required=policy.min_stake, current=stake),
                **common,
            )

        trust = self.trust_breakdown(subject, policy)
        reputation = int(trust["aggregated"])
        common["reputation"] = reputation
        common["trust"] = trust
        if reputation < policy.min_score:
            return _decision(
                Outcome.DENIED,
                "insufficient_reputation",
                rejection=InsufficientReputation(required=policy.min_score, current=reputation),
                **common,
            )

        # 6. pricing
        quote = compute_price(
            PricingInput(
                base_price=policy.base_price,
                reputation=reputation,
                risk=assessment.score,
                stake=stake,
                is_new=trust["feedback_count"] == 0,
                stake_ceiling=policy.stake_ceiling,
            )
        )
        common["price"] = quote

        # 7. payment
        if not req.payment_evidence:
            return _decision(
                Outcome.PAYMENT_REQUIRED,
                "payment_required",
                payment=payment_terms(
                    quote,
                    pay_to=policy.pay_to,
                    asset=policy.asset,
                    network=policy.network,
                    max_timeout_s=policy.payment_timeout_s,
                    resource=req.path,
                ),
                **common,
            )
        reference = ""
        if self.payment_verifier is not None:
            verdict = self.payment_verifier.verify(
                req.payment_evidence,
                amount=quote.final_price,
                recipient=policy.pay_to,
            )
            if not verdict.accepted:
                logger.info(
                    "payment rejected by verifier",
                    extra={"subject": subject, "verifier_reason": verdict.reason[:128]},
                )
                return _decision(Outcome.DENIED, "payment_rejected", **common)
            reference = verdict.reference

        # 8. admission
        self.risk.record_request(subject)
        cred, token = self.sessions.issue(
            subject,
            allowed_paths=(req.path,),
            unit_price=quote.final_price,
            ttl_s=policy.session_ttl_s,
            max_requests=policy.session_max_requests,
            max_cost=policy.session_max_cost,
        )
        enrichment = self.enrichment.run(subject) if self.enrichment is not None else None
        return _decision(
            Outcome.ADMITTED,
            "paid",
            payment_reference=reference,
            session=token,
            session_id=cred.session_id,
            enrichment=enrichment,
            **common,
        )

    # ----- feedback loop / operator actions -----

    def record_outcome(
        self,
        subject: str,
        success: bool,
        *,
        weight: float = 1.0,
        evidence: str = "",
        submitter: str = "",
    ) -> FeedbackRecord:
        """
        Close the loop after an interaction: +1 / -1 feedback into the ledger,
        and a failure mark in the risk profile when the interaction failed.
        """
        record = self.ledger.submit_feedback(
            subject,
            1 if success else -1,
            weight,
            evidence,
            submitter=submitter,
        )
        if not success:
            self.risk.record_failure(record.subject)
        return record

    def flag_abuse(self, subject: str, reason: str, *, actor: str = "") -> int:
        key = normalize_identifier(subject)
        n = self.risk.flag(key, reason)
        log_security_event(
            logger,
            threat_label="abuse_flag",
            subject=key,
            actor=actor or None,
            extra={"reason": reason, "flags": n},
        )
        return n

    def revoke_session(self, session_id: str) -> None:
        self.sessions.revoke(session_id)
        log_security_event(logger, threat_label="session_revoked", extra={"session_id": session_id})

    def quote(
        self,
        subject: Optional[str] = None,
        services: Optional[Sequence[ServiceOffer]] = None,
    ) -> Dict[str, Any]:
        """
        Prices and eligibility for each catalog service, without admitting.
        An unknown or absent subject is quoted as a newcomer.
        """
        policy = self.policy
        offers = tuple(services) if services is not None else self.catalog
        key = normalize_identifier(subject or "")
        if key:
            key = self.registry.resolve_subject_key(key) or key
            trust = self.trust_breakdown(key, policy)
            reputation = int(trust["aggregated"])
            risk = self.risk.assess(key, config=policy.risk_config()).score
            stake = float(self.stake_provider.get_effective_stake(key))
            is_new = trust["feedback_count"] == 0
        else:
            trust = {}
            reputation, risk, stake, is_new = 50, 0, 0.0, True

        rows: List[Dict[str, Any]] = []
        for offer in offers:
            q = compute_price(
                PricingInput(
                    base_price=offer.base_price,
                    reputation=reputation,
                    risk=risk,
                    stake=stake,
                    is_new=is_new,
                    stake_ceiling=policy.stake_ceiling,
                )
            )
            blockers = []
            if reputation < offer.min_reputation:
                blockers.append("insufficient_reputation")
            if stake < offer.min_stake:
                blockers.append("insufficient_stake")
            rows.append(
                {
                    "service": offer.name,
                    "base_price": offer.base_price,
                    "price": q.final_price,
                    "multiplier": q.multiplier,
                    "min_reputation": offer.min_reputation,
                    "min_stake": offer.min_stake,
                    "eligible": not blockers,
                    "blockers": blockers,
                }
            )
        return {
            "subject": key or None,
            "reputation": reputation,
            "risk": risk,
            "stake": stake,
            "tier": tier_for(reputation),
            "trust": trust,
            "services": rows,
        }


__all__ = [
    "ANONYMOUS_SUBJECT",
    "Outcome",
    "GatewayPolicy",
    "AccessRequest",
    "GatewayDecision",
    "TrustGateway",
]
