# atg/tests/test_gateway.py
import json
from dataclasses import replace

import pytest

from atg.collaborators import (
    InMemorySubjectRegistry,
    PaymentVerdict,
    StaticStakeProvider,
)
from atg.enrichment import CredentialEnricher, EnrichmentPipeline
from atg.exporter import GatewayMetrics
from atg.gateway import AccessRequest, GatewayPolicy, Outcome, TrustGateway
from atg.ledger import InMemoryReputationLedger
from atg.pow import solve, verify_solution
from atg.storage import (
    InMemoryChallengeStore,
    InMemoryRiskProfileStore,
    InMemorySessionStateStore,
)
from atg.sync import CrossDomainSync, SyncMessage
from atg.utils import b64url_decode, b64url_encode

AGENT = "0xAgent"
PATH = "/v1/data/prices"


class _Clock:
    def __init__(self, t=1_700_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


class _Verifier:
    def __init__(self, accept=True):
        self.accept = accept
        self.calls = []

    def verify(self, evidence, *, amount, recipient):
        self.calls.append((evidence, amount, recipient))
        if self.accept:
            return PaymentVerdict(True, settled_amount=amount, reference="tx-1")
        return PaymentVerdict(False, reason="insufficient funds")


class _Env:
    def __init__(self, policy=None, verifier=None, enrichment=None, stake=0.0):
        self.clock = _Clock()
        self.registry = InMemorySubjectRegistry()
        self.registry.register(AGENT)
        self.ledger = InMemoryReputationLedger(self.registry, clock=self.clock)
        self.stakes = StaticStakeProvider({AGENT: stake})
        self.sync = CrossDomainSync(self.ledger, admins={"root"}, clock=self.clock)
        self.metrics = GatewayMetrics()
        self.policy = policy or GatewayPolicy()
        self.gw = TrustGateway(
            self.ledger,
            self.registry,
            self.stakes,
            risk_store=InMemoryRiskProfileStore(),
            challenge_store=InMemoryChallengeStore(),
            session_store=InMemorySessionStateStore(),
            session_key=b"s" * 32,
            sync=self.sync,
            policy_provider=lambda: self.policy,
            payment_verifier=verifier,
            enrichment=enrichment,
            metrics=self.metrics,
            clock=self.clock,
        )

    def warm(self, n=5):
        for _ in range(n):
            self.gw.risk.record_request(AGENT.lower())
        self.clock.t += 120

    def access(self, **kw):
        kw.setdefault("identifier", AGENT)
        kw.setdefault("path", PATH)
        return self.gw.evaluate(AccessRequest(**kw))


def test_payment_required_then_admitted():
    env = _Env(policy=GatewayPolicy(pay_to="0xpay"))
    d = env.access()
    assert d.outcome is Outcome.PAYMENT_REQUIRED
    assert d.reason == "payment_required"
    assert d.payment["pay_to"] == "0xpay"
    assert d.payment["resource"] == PATH
    # newcomer: risk 15, reputation 50, ×1.25 new subject
    assert d.risk == 15
    assert d.reputation == 50
    assert d.price.final_price == pytest.approx(0.0125)
    assert d.payment["amount"] == "12500"
    assert d.session is None

    ok = env.access(payment_evidence="proof")
    assert ok.outcome is Outcome.ADMITTED
    assert ok.reason == "paid"
    assert ok.session
    assert ok.session_id
    assert len(ok.decision_id) == 32


def test_session_fast_path_and_fallback():
    env = _Env(policy=GatewayPolicy(session_max_requests=1))
    first = env.access(payment_evidence="proof")
    resumed = env.access(identifier=None, session_credential=first.session)
    assert resumed.outcome is Outcome.ADMITTED
    assert resumed.reason == "session"
    assert resumed.session_resumed
    assert resumed.subject == AGENT.lower()

    # exhausted credential falls back to the full pipeline
    again = env.access(session_credential=resumed.session)
    assert again.outcome is Outcome.PAYMENT_REQUIRED
    assert again.session_error == "max_requests"


def test_session_scoped_to_path():
    env = _Env()
    first = env.access(payment_evidence="proof")
    other = env.access(path="/v1/other", session_credential=first.session)
    assert other.outcome is Outcome.PAYMENT_REQUIRED
    assert other.session_error == "path_not_allowed"


def test_revoked_session_falls_back():
    env = _Env()
    first = env.access(payment_evidence="proof")
    env.gw.revoke_session(first.session_id)
    d = env.access(session_credential=first.session)
    assert d.session_error == "revoked"
    assert d.outcome is Outcome.PAYMENT_REQUIRED


def test_pow_gate():
    env = _Env(policy=GatewayPolicy(pow_difficulty=4))
    d = env.access()
    assert d.outcome is Outcome.CHALLENGE_REQUIRED
    assert d.reason == "pow"
    ch = d.challenge.challenge

    nonce = solve(ch, 4)
    solved = env.access(pow_challenge=ch, pow_nonce=nonce)
    assert solved.outcome is Outcome.PAYMENT_REQUIRED

    replay = env.access(pow_challenge=ch, pow_nonce=nonce)
    assert replay.outcome is Outcome.CHALLENGE_REQUIRED
    assert replay.challenge.challenge != ch


def test_wrong_nonce_keeps_challenge_redeemable():
    env = _Env(policy=GatewayPolicy(pow_difficulty=4))
    ch = env.access().challenge.challenge
    i = 0
    while verify_solution(ch, f"bad{i}", 4):
        i += 1
    wrong = env.access(pow_challenge=ch, pow_nonce=f"bad{i}")
    assert wrong.outcome is Outcome.CHALLENGE_REQUIRED
    ok = env.access(pow_challenge=ch, pow_nonce=solve(ch, 4))
    assert ok.outcome is Outcome.PAYMENT_REQUIRED


def test_identity_required_and_unregistered():
    env = _Env()
    assert env.access(identifier=None).reason == "identity_required"
    d = env.access(identifier="0xStranger")
    assert d.outcome is Outcome.DENIED
    assert d.reason == "unregistered"


def test_open_registration_uses_identifier_or_anonymous():
    env = _Env(policy=GatewayPolicy(require_registration=False))
    assert env.access(identifier=None).subject == "anonymous"
    assert env.access(identifier="0xStranger").subject == "0xstranger"


def test_excessive_risk_from_flags():
    env = _Env()
    for i in range(3):
        env.gw.flag_abuse(AGENT, f"spam-{i}", actor="ops")
    d = env.access(payment_evidence="proof")
    assert d.outcome is Outcome.DENIED
    assert d.reason == "excessive_risk"
    assert d.rejection.code == "excessive_risk"


def test_stake_bars():
    env = _Env(policy=GatewayPolicy(require_stake=True))
    assert env.access().reason == "no_stake"

    env = _Env(policy=GatewayPolicy(min_stake=100.0), stake=40.0)
    d = env.access()
    assert d.reason == "insufficient_stake"
    assert d.rejection.to_dict()["details"]["missing"] == 60.0


def test_reputation_bar_uses_aggregated_score():
    policy = GatewayPolicy(min_score=60, remote_domains=("A",))
    env = _Env(policy=policy)
    d = env.access()
    assert d.reason == "insufficient_reputation"
    assert d.rejection.missing == 10

    env.sync.set_trusted_remote("A", "key-a", actor="root")
    env.sync.receive_message("A", "key-a", SyncMessage("SYNC", AGENT.lower(), 90, 1.0).encode())
    d = env.access()
    assert d.outcome is Outcome.PAYMENT_REQUIRED
    assert d.reputation == 70
    assert d.trust["remotes"] == {"A": 90}


def test_pricing_uses_reputation_and_history():
    env = _Env()
    env.warm()
    for _ in range(3):
        env.ledger.submit_feedback(AGENT, 1, 1.0)
    d = env.access()
    assert d.risk == 0
    assert d.reputation == 100
    assert d.price.final_price == pytest.approx(0.005)


def test_payment_verifier_consulted():
    verifier = _Verifier(accept=False)
    env = _Env(verifier=verifier)
    d = env.access(payment_evidence="bad-proof")
    assert d.outcome is Outcome.DENIED
    assert d.reason == "payment_rejected"
    assert verifier.calls[0][0] == "bad-proof"

    verifier.accept = True
    ok = env.access(payment_evidence="good-proof")
    assert ok.admitted
    assert ok.payment_reference == "tx-1"


def test_enrichment_attached_never_gates():
    class _Broken:
        name = "broken"

        def enrich(self, subject):
            raise RuntimeError("down")

    pipe = EnrichmentPipeline([_Broken(), CredentialEnricher(lambda s: True)])
    env = _Env(enrichment=pipe)
    d = env.access(payment_evidence="proof")
    assert d.admitted
    assert d.enrichment.failed == ("broken",)
    assert d.enrichment.score_adjustment == 15


def test_internal_fault_is_generic_error():
    env = _Env()

    class _BadStake:
        def get_effective_stake(self, subject):
            raise RuntimeError("db password is hunter2")

    env.gw.stake_provider = _BadStake()
    d = env.access()
    assert d.outcome is Outcome.ERROR
    assert d.reason == "internal_error"
    assert "hunter2" not in str(d.to_dict())


def test_record_outcome_closes_loop():
    env = _Env()
    env.gw.record_outcome(AGENT, True)
    env.gw.record_outcome(AGENT, False)
    assert env.ledger.get_score(AGENT) == 50
    assert env.gw.risk.store.snapshot(AGENT.lower(), env.clock()).failures == 1


def test_quote_catalog():
    env = _Env()
    q = env.gw.quote(AGENT)
    rows = {r["service"]: r for r in q["services"]}
    assert rows["data-feed"]["eligible"]
    assert rows["gpt4-premium"]["blockers"] == ["insufficient_reputation", "insufficient_stake"]
    anon = env.gw.quote()
    assert anon["subject"] is None
    assert anon["reputation"] == 50


def test_policy_snapshot_per_request():
    env = _Env()
    assert env.access().outcome is Outcome.PAYMENT_REQUIRED
    env.policy = replace(env.policy, pow_difficulty=2)
    assert env.access().outcome is Outcome.CHALLENGE_REQUIRED


def test_decisions_counted():
    env = _Env()
    env.access()
    env.access(identifier=None)
    m = env.metrics
    assert m.sample("atg_decisions_total", {"outcome": "payment-required", "reason": "payment_required"}) == 1.0
    assert m.sample("atg_decisions_total", {"outcome": "denied", "reason": "identity_required"}) == 1.0


def test_non_finite_credential_falls_back():
    env = _Env()
    first = env.access(payment_evidence="proof")
    doc = json.loads(b64url_decode(first.session))
    doc["iat"] = float("nan")
    forged = b64url_encode(json.dumps(doc).encode())
    d = env.access(session_credential=forged)
    assert d.outcome is Outcome.PAYMENT_REQUIRED
    assert d.session_error == "malformed"


def test_overlong_identifier_denied():
    env = _Env()
    d = env.access(identifier="0x" + "a" * 9000)
    assert d.outcome is Outcome.DENIED
    assert d.reason == "invalid_identifier"
    assert d.subject is None
    assert len(d.decision_id) == 32


def test_path_length_bounds():
    env = _Env()
    ok = env.access(path="/v1/" + "p" * 1000, payment_evidence="proof")
    assert ok.admitted
    assert len(ok.decision_id) == 32

    d = env.access(path="/v1/" + "p" * 20_000)
    assert d.outcome is Outcome.DENIED
    assert d.reason == "invalid_path"
    assert len(d.decision_id) == 32


def test_expired_sessions_purged_during_admission():
    env = _Env(policy=GatewayPolicy(session_ttl_s=60.0))
    store = env.gw.sessions.state
    for _ in range(50):
        assert env.access(payment_evidence="proof").admitted
        env.clock.t += 61
    assert store.counts() == {"active": 1, "revoked": 0}
