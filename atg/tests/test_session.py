# atg/tests/test_session.py
import json

import pytest

from atg.errors import SessionInvalid
from atg.session import SessionManager
from atg.storage import InMemorySessionStateStore
from atg.utils import b64url_decode, b64url_encode, canonical_json_dumps

KEY = b"k" * 32


class _Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def _mgr(clock=None):
    return SessionManager(InMemorySessionStateStore(), KEY, clock=clock or _Clock())


def _issue(mgr, **kw):
    opts = dict(
        allowed_paths=("/v1/data/*",),
        unit_price=0.01,
        ttl_s=60.0,
        max_requests=3,
        max_cost=1.0,
    )
    opts.update(kw)
    return mgr.issue("0xagent", **opts)


def _reason(fn):
    with pytest.raises(SessionInvalid) as ei:
        fn()
    return ei.value.reason


def test_issue_and_resume_counts_requests():
    mgr = _mgr()
    cred, token = _issue(mgr)
    again, token2 = mgr.resume(token, "/v1/data/prices")
    assert again.session_id == cred.session_id
    assert again.request_count == 1
    third, _ = mgr.resume(token2, "/v1/data/prices")
    assert third.request_count == 2


def test_request_count_at_max_rejected():
    mgr = _mgr()
    _, token = _issue(mgr, max_requests=2)
    mgr.resume(token, "/v1/data/a")
    mgr.resume(token, "/v1/data/a")
    assert _reason(lambda: mgr.resume(token, "/v1/data/a")) == "max_requests"


def test_replaying_old_token_does_not_reset_counter():
    mgr = _mgr()
    _, token = _issue(mgr, max_requests=1)
    mgr.resume(token, "/v1/data/a")
    assert _reason(lambda: mgr.resume(token, "/v1/data/a")) == "max_requests"


def test_revoked_rejected_regardless_of_ttl():
    mgr = _mgr()
    cred, token = _issue(mgr, ttl_s=86_400.0)
    mgr.revoke(cred.session_id)
    assert _reason(lambda: mgr.resume(token, "/v1/data/a")) == "revoked"


def test_expired_rejected():
    clock = _Clock()
    mgr = _mgr(clock)
    _, token = _issue(mgr, ttl_s=10.0)
    clock.t += 11
    assert _reason(lambda: mgr.resume(token, "/v1/data/a")) == "expired"


def test_path_caveat():
    mgr = _mgr()
    _, token = _issue(mgr)
    assert _reason(lambda: mgr.resume(token, "/v1/admin")) == "path_not_allowed"


def test_cost_caveat():
    mgr = _mgr()
    _, token = _issue(mgr, unit_price=0.4, max_cost=1.0, max_requests=10)
    mgr.resume(token, "/v1/data/a")
    mgr.resume(token, "/v1/data/a")
    assert _reason(lambda: mgr.resume(token, "/v1/data/a")) == "max_cost"


def test_tampered_caveats_fail_tag():
    mgr = _mgr()
    _, token = _issue(mgr, max_requests=1)
    doc = json.loads(b64url_decode(token))
    doc["caveats"]["max_requests"] = 1000
    forged = b64url_encode(canonical_json_dumps(doc).encode())
    assert _reason(lambda: mgr.resume(forged, "/v1/data/a")) == "bad_tag"


def test_other_key_fails_tag():
    clock = _Clock()
    _, token = _issue(_mgr(clock))
    other = SessionManager(InMemorySessionStateStore(), b"z" * 32, clock=clock)
    assert _reason(lambda: other.resume(token, "/v1/data/a")) == "bad_tag"


@pytest.mark.parametrize("token", ["", "!!!", b64url_encode(b"[1,2]"), "a" * 5000])
def test_malformed(token):
    assert _reason(lambda: _mgr().resume(token, "/")) == "malformed"


def test_short_key_rejected():
    with pytest.raises(ValueError):
        SessionManager(InMemorySessionStateStore(), b"short")


def test_purge_after_expiry():
    clock = _Clock()
    store = InMemorySessionStateStore()
    mgr = SessionManager(store, KEY, clock=clock)
    cred, _ = _issue(mgr, ttl_s=10.0)
    mgr.revoke(cred.session_id, retain_s=5.0)
    clock.t += 20
    assert mgr.purge_expired() == 2
    assert store.counts() == {"active": 0, "revoked": 0}


@pytest.mark.parametrize("field,value", [("iat", float("nan")), ("unit_price", float("inf"))])
def test_non_finite_claims_are_malformed(field, value):
    mgr = _mgr()
    _, token = _issue(mgr)
    doc = json.loads(b64url_decode(token))
    doc[field] = value
    forged = b64url_encode(json.dumps(doc).encode())
    assert _reason(lambda: mgr.resume(forged, "/v1/data/a")) == "malformed"


def test_non_finite_caveat_is_malformed():
    mgr = _mgr()
    _, token = _issue(mgr)
    doc = json.loads(b64url_decode(token))
    doc["caveats"]["ttl"] = float("-inf")
    forged = b64url_encode(json.dumps(doc).encode())
    assert _reason(lambda: mgr.resume(forged, "/v1/data/a")) == "malformed"


def test_issue_purges_expired_state_periodically():
    clock = _Clock()
    store = InMemorySessionStateStore()
    mgr = SessionManager(store, KEY, purge_interval_s=60.0, clock=clock)
    for _ in range(50):
        _issue(mgr, ttl_s=10.0)
        clock.t += 61
    assert store.counts() == {"active": 1, "revoked": 0}


def test_purge_is_rate_limited():
    clock = _Clock()
    store = InMemorySessionStateStore()
    mgr = SessionManager(store, KEY, purge_interval_s=60.0, clock=clock)
    _issue(mgr, ttl_s=1.0)
    clock.t += 5
    _issue(mgr, ttl_s=1.0)
    assert store.counts()["active"] == 2
    assert mgr.maybe_purge() == 0
    clock.t += 60
    assert mgr.maybe_purge() == 2
