import pytest

from services.plan_catalog import (
    PlanTier,
    catalog_payload,
    credit_price,
    limits_for,
    resolve_tier,
    subscription_price,
)
from services.quota import split_deduction, total_available


def test_deduction_drains_plan_before_credit():
    split = split_deduction(10000, 9500, 200, 600)
    assert split.sufficient
    assert split.from_plan == 500
    assert split.from_credit == 100


def test_deduction_reports_shortfall_when_balance_is_too_small():
    split = split_deduction(1000, 1000, 0, 1)
    assert not split.sufficient
    assert split.shortfall == 1
    assert total_available(1000, 1000, 0) == 0


def test_zero_word_deduction_touches_nothing():
    assert split_deduction(1000, 10, 5, 0) == (0, 0, 0)


def test_negative_deduction_is_rejected():
    with pytest.raises(ValueError):
        split_deduction(1000, 0, 0, -1)


def test_catalog_limits_and_prices():
    assert limits_for(PlanTier.FREE).quota_limit == 1000
    assert limits_for(PlanTier.PRO).max_purchasable_credit == 36000
    assert limits_for(PlanTier.PREMIUM).upload_limit_mb == 100
    assert subscription_price(PlanTier.PREMIUM, "inr") == 29900
    assert subscription_price(PlanTier.PRO, "EUR") is None
    assert credit_price(1000, "INR") == 3100
    assert credit_price(1500, "USD") == 75
    assert credit_price(1001, "USD") == 51  # 50.05 rounds up
    assert credit_price(10, "GBP") is None


def test_tier_resolution_is_closed():
    assert resolve_tier(" Premium ") is PlanTier.PREMIUM
    assert resolve_tier("enterprise") is None
    assert PlanTier.PRO.rank < PlanTier.PREMIUM.rank
    tiers = [plan["tier"] for plan in catalog_payload()["plans"]]
    assert tiers == ["free", "pro", "premium"]
