# atg/tests/test_ledger.py
import math

import pytest

from atg.collaborators import InMemorySubjectRegistry
from atg.errors import InvalidInput, InvalidScore, UnknownSubject
from atg.events import EventBus, FeedbackRecorded
from atg.ledger import (
    InMemoryReputationLedger,
    SQLiteReputationLedger,
    make_reputation_ledger,
    score_from_weights,
    tier_for,
)

ALICE = "0xAlice"


def _ledger(events=None):
    reg = InMemorySubjectRegistry()
    reg.register(ALICE)
    return InMemoryReputationLedger(reg, events=events, clock=lambda: 1000.0)


def test_zero_feedback_is_neutral():
    led = _ledger()
    assert led.get_score(ALICE) == 50
    assert led.meets_threshold(ALICE, 50)
    assert not led.meets_threshold(ALICE, 51)
    assert led.get_feedback_count(ALICE) == 0


def test_weighted_score_and_count():
    led = _ledger()
    led.submit_feedback(ALICE, 1, 3.0)
    led.submit_feedback(ALICE, -1, 1.0)
    led.submit_feedback(ALICE, 0, 0.0)
    assert led.get_score(ALICE) == 75
    assert led.get_feedback_count(ALICE) == 3
    agg = led.get_aggregate(ALICE.lower())
    assert agg.positive_weight + agg.negative_weight <= agg.total_weight


def test_neutral_feedback_dilutes():
    led = _ledger()
    led.submit_feedback(ALICE, 1, 1.0)
    led.submit_feedback(ALICE, 0, 1.0)
    assert led.get_score(ALICE) == 50


def test_rounding_is_half_up():
    # 1/8 * 100 = 12.5 -> 13, not banker's 12
    assert score_from_weights(1.0, 8.0) == 13
    assert score_from_weights(0.0, 0.0) == 50
    assert score_from_weights(5.0, 5.0) == 100


def test_only_zero_weight_keeps_neutral():
    led = _ledger()
    led.submit_feedback(ALICE, 1, 0.0)
    assert led.get_score(ALICE) == 50
    assert led.get_feedback_count(ALICE) == 1


@pytest.mark.parametrize("score", [2, -2, 1.0, True, "1"])
def test_invalid_score_rejected(score):
    led = _ledger()
    with pytest.raises(InvalidScore):
        led.submit_feedback(ALICE, score, 1.0)
    assert led.get_feedback_count(ALICE) == 0


@pytest.mark.parametrize("weight", [-1.0, math.inf, math.nan])
def test_invalid_weight_rejected(weight):
    led = _ledger()
    with pytest.raises(InvalidInput):
        led.submit_feedback(ALICE, 1, weight)
    assert led.get_feedback_count(ALICE) == 0


def test_invalid_score_is_invalid_input():
    assert issubclass(InvalidScore, InvalidInput)


def test_oversized_evidence_rejected():
    led = _ledger()
    with pytest.raises(InvalidInput):
        led.submit_feedback(ALICE, 1, 1.0, "x" * 1025)


def test_unknown_subject_leaves_ledger_unchanged():
    led = _ledger()
    with pytest.raises(UnknownSubject):
        led.submit_feedback("0xMallory", 1, 1.0)
    assert led.get_feedback_count("0xMallory") == 0
    assert led.stats()["feedback"] == 0


def test_subject_lookup_is_case_insensitive():
    led = _ledger()
    led.submit_feedback("0xALICE", 1, 1.0)
    assert led.get_score("0xalice") == 100


def test_feedback_event_emitted_after_write():
    bus = EventBus()
    seen = []
    bus.subscribe(FeedbackRecorded, seen.append)
    led = _ledger(events=bus)
    rec = led.submit_feedback(ALICE, -1, 2.0, "refund", submitter="0xBob")
    assert len(seen) == 1
    assert seen[0].subject == ALICE.lower()
    assert seen[0].seq == rec.seq
    assert seen[0].score_after == 0
    assert rec.submitter == "0xbob"


def test_failing_observer_does_not_undo_write():
    bus = EventBus()

    def boom(_evt):
        raise RuntimeError("observer down")

    bus.subscribe(FeedbackRecorded, boom)
    led = _ledger(events=bus)
    led.submit_feedback(ALICE, 1, 1.0)
    assert led.get_feedback_count(ALICE) == 1


def test_list_feedback_ascending():
    led = _ledger()
    for s in (1, -1, 1):
        led.submit_feedback(ALICE, s, 1.0)
    seqs = [r.seq for r in led.list_feedback(ALICE)]
    assert seqs == sorted(seqs)
    assert len(led.list_feedback(ALICE, limit=2)) == 2


def test_tiers():
    assert tier_for(95) == "premium"
    assert tier_for(70) == "standard"
    assert tier_for(50) == "basic"
    assert tier_for(49) == "restricted"


def test_sqlite_backend_persists(tmp_path):
    reg = InMemorySubjectRegistry()
    reg.register(ALICE)
    path = str(tmp_path / "rep.db")
    led = SQLiteReputationLedger(reg, path, clock=lambda: 5.0)
    led.submit_feedback(ALICE, 1, 3.0)
    led.submit_feedback(ALICE, -1, 1.0)
    led.close()

    again = make_reputation_ledger(f"sqlite:///{path}", reg)
    assert again.get_score(ALICE) == 75
    assert again.get_feedback_count(ALICE) == 2
    assert [r.signed_score for r in again.list_feedback(ALICE)] == [1, -1]
    assert again.stats()["tiers"]["standard"] == 1


def test_unsupported_dsn():
    with pytest.raises(ValueError):
        make_reputation_ledger("postgres://x", InMemorySubjectRegistry())
