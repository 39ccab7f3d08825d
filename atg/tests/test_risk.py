# atg/tests/test_risk.py
import threading

from atg.risk import RiskConfig, RiskScorer, score_snapshot
from atg.storage import AbuseFlag, InMemoryRiskProfileStore, RiskSnapshot


class _Clock:
    def __init__(self, t=1_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


def _snap(**kw):
    base = dict(subject="s", requests_last_minute=0, requests_retained=10, failures=0)
    base.update(kw)
    return RiskSnapshot(**base)


def test_quiet_established_subject_scores_zero():
    score, comps = score_snapshot(_snap(), RiskConfig())
    assert score == 0
    assert set(comps) == {"burst", "failures", "flags", "newcomer", "payload", "off_hours"}


def test_newcomer_penalty():
    assert score_snapshot(_snap(requests_retained=4), RiskConfig())[0] == 15
    assert score_snapshot(_snap(requests_retained=5), RiskConfig())[0] == 0


def test_burst_tiers():
    assert score_snapshot(_snap(requests_last_minute=10), RiskConfig())[0] == 0
    assert score_snapshot(_snap(requests_last_minute=11), RiskConfig())[0] == 10
    assert score_snapshot(_snap(requests_last_minute=31, requests_retained=31), RiskConfig())[0] == 20


def test_failure_tiers():
    assert score_snapshot(_snap(failures=6), RiskConfig())[0] == 15
    assert score_snapshot(_snap(failures=11), RiskConfig())[0] == 30


def test_payload_penalty_strictly_above():
    cfg = RiskConfig()
    assert score_snapshot(_snap(), cfg, payload_size=100_000)[0] == 0
    assert score_snapshot(_snap(), cfg, payload_size=100_001)[0] == 20


def test_off_hours_disabled_by_default():
    assert score_snapshot(_snap(), RiskConfig(), local_hour=3)[0] == 0
    cfg = RiskConfig(off_hours_penalty=5)
    assert score_snapshot(_snap(), cfg, local_hour=3)[0] == 5
    assert score_snapshot(_snap(), cfg, local_hour=12)[0] == 0


def test_score_capped():
    cfg = RiskConfig()
    snap = _snap(requests_last_minute=50, requests_retained=1, failures=20)
    assert score_snapshot(snap, cfg, payload_size=10**6)[0] == 85
    flags = tuple(AbuseFlag(f"r{i}", 0.0) for i in range(5))
    flagged = _snap(requests_last_minute=50, requests_retained=1, failures=20, flags=flags)
    assert score_snapshot(flagged, cfg, payload_size=10**6)[0] == 100


def test_three_flags_block_even_when_score_low():
    clock = _Clock()
    scorer = RiskScorer(InMemoryRiskProfileStore(), clock=clock)
    for _ in range(10):
        scorer.record_request("s")
    clock.t += 120
    for i in range(3):
        scorer.flag("s", f"spam-{i}")
    a = scorer.assess("s")
    assert a.flag_count == 3
    assert a.score == 30
    assert a.blocked


def test_block_threshold_strictly_above():
    clock = _Clock()
    store = InMemoryRiskProfileStore()
    scorer = RiskScorer(store, clock=clock)
    assert not scorer.assess("fresh", config=RiskConfig(block_threshold=15)).blocked
    assert scorer.assess("fresh", config=RiskConfig(block_threshold=14)).blocked


def test_requests_pruned_after_an_hour():
    clock = _Clock()
    store = InMemoryRiskProfileStore()
    scorer = RiskScorer(store, clock=clock)
    for _ in range(12):
        scorer.record_request("s")
    assert store.snapshot("s", clock.t).requests_last_minute == 12
    clock.t += 3601
    assert scorer.record_request("s") == 1
    snap = store.snapshot("s", clock.t)
    assert snap.requests_retained == 1


def test_snapshot_does_not_create_profile():
    store = InMemoryRiskProfileStore()
    store.snapshot("ghost", 0.0)
    assert len(store) == 0


def test_failures_counted():
    scorer = RiskScorer(InMemoryRiskProfileStore(), clock=_Clock())
    for _ in range(6):
        scorer.record_failure("s")
    assert scorer.assess("s").components["failures"] == 15


def test_idle_profiles_purged():
    clock = _Clock()
    store = InMemoryRiskProfileStore()
    scorer = RiskScorer(store, purge_interval_s=60.0, clock=clock)
    scorer.record_request("idle")
    scorer.record_failure("failing")
    scorer.flag("flagged", "spam")
    clock.t += 3601
    scorer.record_request("active")
    assert len(store) == 3
    assert store.snapshot("idle", clock.t).requests_retained == 0
    assert store.snapshot("failing", clock.t).failures == 1
    assert store.snapshot("flagged", clock.t).flag_count == 1


def test_writes_after_purge_land_in_fresh_profile():
    clock = _Clock()
    store = InMemoryRiskProfileStore()
    store.record_request("s", clock.t)
    clock.t += 3601
    assert store.purge_idle(clock.t) == 1
    assert store.record_request("s", clock.t) == 1
    assert store.snapshot("s", clock.t).requests_retained == 1


def test_concurrent_requests_counted_exactly():
    clock = _Clock()
    store = InMemoryRiskProfileStore()
    scorer = RiskScorer(store, purge_interval_s=0.0, clock=clock)
    workers, per_worker = 16, 50
    barrier = threading.Barrier(workers)

    def _run():
        barrier.wait()
        for _ in range(per_worker):
            scorer.record_request("s")

    threads = [threading.Thread(target=_run) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.snapshot("s", clock.t).requests_retained == workers * per_worker
