from market_estimator.services.observations import build_observation, data_quality_flags, summarize_listings
from market_estimator.services.tier1_estimator import build_tier1_snapshot
from market_estimator.services.tier2_refinement import Tier2Refinement


def test_summary_counts(make_listings):
    listings = make_listings(count=4, price=20.0, reviews=100)
    listings[1].is_sponsored = True
    listings[2].brand = "Other"
    summary = summarize_listings(listings)
    assert summary["listing_count"] == 4
    assert summary["sponsored_count"] == 1
    assert summary["brand_count"] == 2
    assert summary["median_price"] == 20.0


def test_quality_flags(make_listings):
    listings = make_listings(count=3)
    listings[0].price = None
    listings[1].asin = "bad"
    flags = data_quality_flags(listings, None)
    assert flags["price_coverage"] == round(2 / 3, 3)
    assert flags["invalid_asins"] == 1
    assert flags["thin_page"] is True
    assert flags["rank_coverage"] is None


def test_observation_records_outputs(make_listings):
    listings = make_listings(count=6)
    refinement = Tier2Refinement(
        snapshot_id=4,
        revenue_range=(800.0, 1200.0),
        search_volume_range=(7000.0, 13000.0),
        calibration_source="heuristic_v1",
        rank_coverage=0.5,
        estimator_inputs={"page1_count": 6},
        failed_steps=["brand_dominance"],
    )
    obs = build_observation(
        marketplace="US", keyword="garlic press", snapshot_id=4, category="Kitchen",
        listings=listings, tier1=build_tier1_snapshot(listings), refinement=refinement,
        brand_moat={"level": "NONE"},
    )
    assert obs["estimator_outputs"]["revenue"] == {
        "low": 800.0, "high": 1200.0, "source": "heuristic_v1", "model_version": None,
    }
    assert obs["estimator_outputs"]["search_volume"]["high"] == 13000.0
    assert obs["estimator_inputs"] == {"page1_count": 6}
    assert "products" not in obs["tier1"]
    assert obs["tier2"]["brand_moat"] == {"level": "NONE"}
    assert obs["data_quality"]["failed_steps"] == ["brand_dominance"]
    assert obs["data_quality"]["rank_coverage"] == 0.5
