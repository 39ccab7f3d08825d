# atg/tests/test_pow.py
import hashlib
import threading

from atg.exporter import GatewayMetrics
from atg.pow import ProofOfWorkGate, leading_zero_bits, solve, verify_solution
from atg.storage import (
    TAKE_EXPIRED,
    TAKE_INVALID,
    TAKE_REDEEMED,
    TAKE_UNKNOWN,
    InMemoryChallengeStore,
)


class _Clock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def _wrong_nonce(challenge, difficulty):
    i = 0
    while verify_solution(challenge, f"w{i}", difficulty):
        i += 1
    return f"w{i}"


def test_leading_zero_bits():
    assert leading_zero_bits(b"\x00\x00\xff") == 16
    assert leading_zero_bits(b"\x0f") == 4
    assert leading_zero_bits(b"\x80") == 0
    assert leading_zero_bits(b"\x00\x01") == 15


def test_verify_matches_sha256():
    nonce = solve("abc", 8)
    digest = hashlib.sha256(("abc" + nonce).encode()).digest()
    assert digest[0] == 0
    assert verify_solution("abc", nonce, 8)
    assert verify_solution("abc", "", 0)
    assert not verify_solution("abc", "x" * 129, 1)


def test_challenge_single_use():
    clock = _Clock()
    gate = ProofOfWorkGate(InMemoryChallengeStore(), clock=clock)
    ch = gate.issue(8)
    assert len(ch.challenge) == 64
    assert ch.expires_at == clock.t + 30.0
    nonce = solve(ch.challenge, 8)
    assert gate.redeem(ch.challenge, nonce) == TAKE_REDEEMED
    assert gate.redeem(ch.challenge, nonce) == TAKE_UNKNOWN


def test_wrong_nonce_keeps_challenge():
    store = InMemoryChallengeStore()
    gate = ProofOfWorkGate(store, clock=_Clock())
    ch = gate.issue(8)
    assert gate.redeem(ch.challenge, _wrong_nonce(ch.challenge, 8)) == TAKE_INVALID
    assert ch.challenge in store
    assert gate.redeem(ch.challenge, solve(ch.challenge, 8)) == TAKE_REDEEMED
    assert ch.challenge not in store


def test_expired_challenge_removed():
    clock = _Clock()
    store = InMemoryChallengeStore()
    gate = ProofOfWorkGate(store, ttl_s=5, clock=clock)
    ch = gate.issue(4)
    nonce = solve(ch.challenge, 4)
    clock.t += 6
    assert gate.redeem(ch.challenge, nonce) == TAKE_EXPIRED
    assert len(store) == 0


def test_difficulty_fixed_at_issue():
    gate = ProofOfWorkGate(InMemoryChallengeStore(), clock=_Clock())
    ch = gate.issue(4)
    # a later, harder policy does not change what this challenge needs
    nonce = solve(ch.challenge, 4)
    assert gate.redeem(ch.challenge, nonce) == TAKE_REDEEMED


def test_store_bounded():
    clock = _Clock()
    store = InMemoryChallengeStore(max_outstanding=2)
    gate = ProofOfWorkGate(store, clock=clock)
    first = gate.issue(1)
    gate.issue(1)
    gate.issue(1)
    assert len(store) == 2
    assert first.challenge not in store


def test_purge_expired():
    clock = _Clock()
    store = InMemoryChallengeStore()
    gate = ProofOfWorkGate(store, ttl_s=1, clock=clock)
    gate.issue(1)
    gate.issue(1)
    assert store.purge_expired(clock.t + 2) == 2


def test_metrics_recorded():
    m = GatewayMetrics()
    gate = ProofOfWorkGate(InMemoryChallengeStore(), metrics=m, clock=_Clock())
    ch = gate.issue(4)
    gate.redeem(ch.challenge, solve(ch.challenge, 4))
    assert m.sample("atg_pow_challenges_total", {"event": "issued"}) == 1.0
    assert m.sample("atg_pow_challenges_total", {"event": "redeemed"}) == 1.0


def test_concurrent_redeem_single_winner():
    gate = ProofOfWorkGate(InMemoryChallengeStore(), clock=_Clock())
    ch = gate.issue(4)
    nonce = solve(ch.challenge, 4)
    workers = 32
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def _run():
        barrier.wait()
        r = gate.redeem(ch.challenge, nonce)
        with lock:
            results.append(r)

    threads = [threading.Thread(target=_run) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(TAKE_REDEEMED) == 1
    assert results.count(TAKE_UNKNOWN) == workers - 1
