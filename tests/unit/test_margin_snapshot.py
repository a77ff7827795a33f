import pytest

from market_estimator.services.fee_estimator import FeeInfo
from market_estimator.services.margin_snapshot import (
    COGS_SOURCE_OVERRIDE,
    PRICE_SOURCE_ASIN,
    PRICE_SOURCE_FALLBACK,
    PRICE_SOURCE_PAGE1,
    TIER_ESTIMATED,
    TIER_EXACT,
    TIER_REFINED,
    CostOverrideError,
    MarginSnapshot,
    build_margin_snapshot,
    refine_margin_snapshot,
)


def test_dropshipping_keyword_snapshot_is_estimated():
    snap = build_margin_snapshot("KEYWORD", "dropshipping", market_avg_price=20.0)
    assert snap.assumed_price == 20.0
    assert snap.price_source == PRICE_SOURCE_PAGE1
    assert (snap.cogs_min, snap.cogs_max) == (14.0, 17.0)
    assert snap.fba_fee == 10.0
    assert snap.confidence_tier == TIER_ESTIMATED
    # costs exceed price in both scenarios
    assert snap.net_margin_min_pct == 0.0
    assert snap.net_margin_max_pct == 0.0
    assert snap.breakeven_price_max == 27.0


def test_refine_with_user_costs_becomes_exact():
    snap = build_margin_snapshot("KEYWORD", "dropshipping", market_avg_price=20.0)
    refined = refine_margin_snapshot(snap, {"cogs": 12, "fba_fee": 3.50})
    assert refined is snap
    assert snap.confidence_tier == TIER_EXACT
    assert snap.cogs_source == COGS_SOURCE_OVERRIDE
    assert (snap.cogs_min, snap.cogs_max) == (12.0, 12.0)
    assert snap.net_margin_min_pct == pytest.approx(22.5)
    assert snap.net_margin_max_pct == pytest.approx(22.5)
    assert snap.breakeven_price_min == 15.5


def test_asin_mode_never_reads_market_price():
    snap = build_margin_snapshot("ASIN", "private_label", asin_price=None, market_avg_price=30.0)
    assert snap.price_source == PRICE_SOURCE_FALLBACK
    assert snap.assumed_price == 25.0
    assert any("fallback" in a.lower() for a in snap.assumptions)

    snap = build_margin_snapshot("ASIN", "private_label", asin_price=40.0, market_avg_price=30.0)
    assert snap.price_source == PRICE_SOURCE_ASIN
    assert snap.assumed_price == 40.0


def test_fallback_price_caps_tier_even_with_user_costs():
    snap = build_margin_snapshot("KEYWORD", "private_label", user_overrides={"cogs": 5, "fba_fee": 4})
    assert snap.price_source == PRICE_SOURCE_FALLBACK
    assert snap.confidence_tier == TIER_ESTIMATED


def test_exact_fee_alone_is_refined():
    snap = build_margin_snapshot(
        "KEYWORD", "private_label", market_avg_price=30.0, fee_info=FeeInfo(4.0, "sp_api")
    )
    assert snap.confidence_tier == TIER_REFINED
    assert snap.fba_fee == 4.0
    assert snap.fba_fee_source == "sp_api"


def test_estimated_fee_info_is_not_treated_as_exact():
    snap = build_margin_snapshot("KEYWORD", "private_label", market_avg_price=30.0, fee_info=FeeInfo(4.0))
    assert snap.confidence_tier == TIER_ESTIMATED
    assert snap.fba_fee == 10.0


def test_unknown_model_and_electronics_widen_range():
    snap = build_margin_snapshot("KEYWORD", "not_sure", market_avg_price=100.0, category="Electronics")
    # 40-65% band widened by 10% of its width per reason, two reasons
    assert (snap.cogs_min, snap.cogs_max) == (35.0, 70.0)
    assert sum("Widened" in a for a in snap.assumptions) == 2


def test_cogs_at_or_above_price_is_rejected():
    with pytest.raises(CostOverrideError):
        build_margin_snapshot("KEYWORD", "private_label", market_avg_price=20.0, user_overrides={"cogs": 20})


@pytest.mark.parametrize("value", [0, -1, "abc", True])
def test_invalid_overrides_are_rejected(value):
    with pytest.raises(CostOverrideError):
        build_margin_snapshot("ASIN", "private_label", asin_price=20.0, user_overrides={"fba_fee": value})


def test_refine_keeps_exact_fee_over_new_estimate():
    snap = build_margin_snapshot(
        "ASIN", "private_label", asin_price=30.0, fee_info=FeeInfo(4.0, "sp_api")
    )
    refine_margin_snapshot(snap, {"cogs": 8}, fee_info=FeeInfo(9.0))
    assert snap.fba_fee == 4.0
    assert snap.confidence_tier == TIER_EXACT


def test_round_trip_through_dict():
    snap = build_margin_snapshot("ASIN", "wholesale", asin_price=30.0, fee_info=FeeInfo(5.0, "sp_api"))
    restored = MarginSnapshot.from_dict(snap.to_dict())
    assert restored.fee_info == FeeInfo(5.0, "sp_api")
    refine_margin_snapshot(restored, {"cogs": 10})
    assert restored.confidence_tier == TIER_EXACT


def test_unknown_mode_raises():
    with pytest.raises(ValueError):
        build_margin_snapshot("CATEGORY", "private_label")
