import pytest

from market_estimator.services.market_heuristics import (
    EstimatorInputs,
    build_estimator_inputs,
    format_range,
    revenue_baseline,
    search_volume_baseline,
)


def test_search_volume_from_page_density():
    inputs = EstimatorInputs(page1_count=20, organic_count=20, avg_reviews=100, category="Kitchen")
    result = search_volume_baseline(inputs)
    assert result["estimate"] == pytest.approx(30_000)
    assert result["confidence"] == "medium"
    assert result["category_bucket"] == "home"


def test_search_volume_prefers_total_results_and_applies_multipliers():
    inputs = EstimatorInputs(
        page1_count=10, organic_count=8, sponsored_count=2, avg_reviews=100,
        total_results=1_000_000, keyword="bluetooth headphones",
    )
    result = search_volume_baseline(inputs)
    # 20,000 base * electronics 1.5 * sponsored (0.9 + 0.2 * 0.6)
    assert result["estimate"] == pytest.approx(20_000 * 1.5 * 1.02)


def test_search_volume_low_confidence_without_reviews():
    assert search_volume_baseline(EstimatorInputs(page1_count=40))["confidence"] == "low"


def test_revenue_baseline_switches_to_bsr_with_coverage():
    inputs = EstimatorInputs(
        page1_count=10, organic_count=10, median_reviews=200, median_price=20.0,
        bsr_revenue=50_000.0, bsr_units=2500.0, rank_coverage=0.4,
    )
    result = revenue_baseline(inputs)
    # medium band floor 6,000 units * $20
    assert result["source"] == "page_one_demand"
    assert result["estimate"] == pytest.approx(120_000)

    inputs.rank_coverage = 0.5
    result = revenue_baseline(inputs)
    assert result["source"] == "bsr"
    assert result["estimate"] == 50_000.0


def test_inputs_from_listings(make_listings):
    listings = make_listings(count=4, price=10.0, reviews=99)
    listings[0].is_sponsored = True
    inputs = build_estimator_inputs(listings, category="Toys")
    assert inputs.page1_count == 4
    assert inputs.sponsored_count == 1
    assert inputs.sponsored_pct == 25.0
    assert inputs.median_price == 10.0
    assert inputs.price_band == "budget"
    assert EstimatorInputs.from_dict(inputs.to_dict()) == inputs


def test_format_range():
    assert format_range(12_000, 18_500) == "12k-18k"
    assert format_range(1_200_000, 1_800_000) == "1.2M-1.8M"
    assert format_range(40, 90) == "40-90"
