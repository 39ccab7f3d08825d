# atg/tests/test_pricing.py
import pytest

from atg.pricing import (
    DEFAULT_CATALOG,
    PricingInput,
    calculate_price,
    catalog_by_name,
    compute_price,
    payment_terms,
)


def test_high_reputation_discount():
    q = calculate_price(0.05, 95, 10, 0, False)
    assert q.final_price == pytest.approx(0.025)
    assert not q.floored


def test_low_reputation_risky_newcomer():
    q = calculate_price(0.05, 30, 60, 0, True)
    assert q.multiplier == pytest.approx(2.8125)
    assert q.final_price == pytest.approx(0.140625)


def test_breakdown_in_application_order():
    q = calculate_price(0.05, 30, 60, 0, True)
    assert [name for name, _ in q.breakdown] == ["reputation", "risk", "stake", "new_subject"]
    assert dict(q.breakdown) == {"reputation": 1.5, "risk": 1.5, "stake": 1.0, "new_subject": 1.25}


def test_risk_tiers_are_strict():
    assert calculate_price(1.0, 50, 25).multiplier == pytest.approx(1.0)
    assert calculate_price(1.0, 50, 26).multiplier == pytest.approx(1.25)
    assert calculate_price(1.0, 50, 51).multiplier == pytest.approx(1.5)


def test_stake_discount_capped():
    half = calculate_price(1.0, 50, 0, stake=1e18)
    assert half.multiplier == pytest.approx(0.9)
    full = calculate_price(1.0, 50, 0, stake=1e21)
    assert full.multiplier == pytest.approx(0.8)


def test_floor_applied_last():
    factors = (lambda p: ("promo", 0.01),)
    q = compute_price(PricingInput(base_price=1.0, reputation=50, risk=0), factors)
    assert q.floored
    assert q.final_price == pytest.approx(0.25)
    assert q.breakdown == (("promo", 0.01),)


def test_payment_terms_in_micro_units():
    q = calculate_price(0.05, 95, 10)
    terms = payment_terms(
        q,
        pay_to="0xpay",
        asset="USDC",
        network="base-sepolia",
        max_timeout_s=60,
        resource="/v1/data",
    )
    assert terms["amount"] == "25000"
    assert terms["pay_to"] == "0xpay"
    assert terms["resource"] == "/v1/data"
    assert terms["max_timeout_s"] == 60


def test_catalog():
    by_name = catalog_by_name(DEFAULT_CATALOG)
    assert set(by_name) == {"gpt4-premium", "claude-standard", "data-feed", "agent-discovery"}
    assert by_name["data-feed"].min_reputation == 0
