# atg/tests/test_contracts.py
from fastapi.testclient import TestClient

from atg.collaborators import StaticStakeProvider
from atg.config import Settings, make_reloadable_settings
from atg.pow import solve
from atg.runtime import build_runtime
from atg.service_http import ServiceHttpConfig, create_app
from atg.sync import SyncMessage

AGENT = "0xagent"


def _client(settings=None, http_config=None, service_token=""):
    rt = build_runtime(
        make_reloadable_settings(settings or Settings(pay_to="0xpay")),
        stake_provider=StaticStakeProvider({AGENT: 1e18}),
        session_key=b"k" * 32,
    )
    rt.registry.register(AGENT)
    app = create_app(rt, http_config=http_config or ServiceHttpConfig(), service_token=service_token)
    return TestClient(app), rt


client, runtime = _client()


def test_healthz():
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers["X-ATG-Config-Hash"] == runtime.settings.get().config_hash()


def test_readyz():
    r = client.get("/readyz")
    assert r.status_code == 200
    assert r.json()["ready"] is True


def test_version():
    assert client.get("/version").json()["config_version"] == "v0.1"


def test_metrics_exposed():
    client.get("/healthz")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "atg_http_requests_total" in r.text


def test_access_payment_required():
    r = client.post("/v1/access", headers={"X-Subject": AGENT}, params={"resource": "/v1/data"})
    assert r.status_code == 402
    body = r.json()
    assert body["outcome"] == "payment-required"
    assert body["payment"]["pay_to"] == "0xpay"
    assert body["pricing"]["breakdown"]["new_subject"] == 1.25
    assert r.headers["X-Trust-Score"] == "50"
    assert "X-Decision-Id" in r.headers


def test_access_admit_and_resume():
    c, _ = _client()
    r = c.post("/v1/access", headers={"X-Subject": AGENT, "X-Payment": "proof"})
    assert r.status_code == 200
    assert r.json()["outcome"] == "admitted"
    cred = r.headers["X-Session-Credential"]

    r2 = c.post("/v1/access", headers={"X-Session-Credential": cred})
    assert r2.status_code == 200
    assert r2.json()["reason"] == "session"
    assert r2.headers["X-Session-Credential"] != cred


def test_access_denied_unregistered():
    r = client.post("/v1/access", headers={"X-Subject": "0xnobody"})
    assert r.status_code == 403
    assert r.json()["reason"] == "unregistered"


def test_access_insufficient_reputation_is_402():
    c, _ = _client(Settings(min_score=80))
    r = c.post("/v1/access", headers={"X-Subject": AGENT})
    assert r.status_code == 402
    assert r.json()["rejection"]["details"]["missing"] == 30


def test_access_challenge_required():
    c, _ = _client(Settings(pow_difficulty=4))
    r = c.post("/v1/access", headers={"X-Subject": AGENT})
    assert r.status_code == 429
    ch = r.headers["X-PoW-Challenge"]
    assert r.headers["X-PoW-Difficulty"] == "4"

    r2 = c.post(
        "/v1/access",
        headers={"X-Subject": AGENT, "X-PoW-Challenge": ch, "X-PoW-Nonce": solve(ch, 4)},
    )
    assert r2.status_code == 402


def test_large_payload_raises_risk():
    c, _ = _client()
    r = c.post("/v1/access", headers={"X-Subject": AGENT}, content=b"x" * 100_001)
    assert r.json()["risk_components"]["payload"] == 20


def test_body_size_guard():
    c, _ = _client(http_config=ServiceHttpConfig(max_body_bytes=10))
    r = c.post("/v1/access", headers={"X-Subject": AGENT}, content=b"x" * 11)
    assert r.status_code == 413


def test_feedback_and_reputation():
    c, _ = _client()
    r = c.post(f"/v1/subjects/{AGENT}/feedback", json={"score": 1, "weight": 3})
    assert r.status_code == 200
    assert r.json()["score"] == 100
    r = c.post(f"/v1/subjects/{AGENT}/feedback", json={"success": False})
    assert r.json()["score"] == 75

    r = c.get(f"/v1/subjects/{AGENT}/reputation")
    body = r.json()
    assert body["score"] == 75
    assert body["tier"] == "standard"
    assert body["feedback_count"] == 2


def test_feedback_errors():
    assert client.post("/v1/subjects/0xghost/feedback", json={"score": 1}).status_code == 404
    assert client.post(f"/v1/subjects/{AGENT}/feedback", json={"score": 5}).status_code == 400
    assert client.post(f"/v1/subjects/{AGENT}/feedback", json={}).status_code == 400
    assert client.get("/v1/subjects/0xghost/reputation").status_code == 404


def test_feedback_service_token():
    c, _ = _client(http_config=ServiceHttpConfig(require_service_token=True), service_token="svc-secret")
    url = f"/v1/subjects/{AGENT}/feedback"
    assert c.post(url, json={"score": 1}).status_code == 403
    ok = c.post(url, json={"score": 1}, headers={"X-ATG-Service-Token": "svc-secret"})
    assert ok.status_code == 200


def test_sync_inbound_and_crossdomain():
    c, rt = _client()
    rt.sync.set_trusted_remote("A", "key-a", actor="admin")
    msg = SyncMessage("SYNC", AGENT, 90, 1.0).encode()

    bad = c.post("/v1/sync/inbound", content=msg, headers={"X-Origin-Domain": "A", "X-Origin-Authority": "nope"})
    assert bad.status_code == 403

    ok = c.post("/v1/sync/inbound", content=msg, headers={"X-Origin-Domain": "A", "X-Origin-Authority": "key-a"})
    assert ok.status_code == 200
    assert ok.json()["accepted"] is True

    junk = c.post("/v1/sync/inbound", content=b"{", headers={"X-Origin-Domain": "A", "X-Origin-Authority": "key-a"})
    assert junk.status_code == 400

    r = c.get(f"/v1/subjects/{AGENT}/crossdomain", params={"domains": "A,B", "min_score": 60})
    body = r.json()
    assert body["aggregated"] == 70
    assert body["remotes"] == {"A": 90}
    assert body["meets_threshold"] is False


def test_pricing_quote():
    r = client.get("/v1/pricing", params={"subject": AGENT})
    body = r.json()
    assert body["subject"] == AGENT
    assert {s["service"] for s in body["services"]} >= {"data-feed", "gpt4-premium"}


def test_access_overlong_subject_is_400():
    r = client.post("/v1/access", headers={"X-Subject": "0x" + "a" * 9000})
    assert r.status_code == 400
    body = r.json()
    assert body["reason"] == "invalid_identifier"
    assert len(body["decision_id"]) == 32
