import pytest

from market_estimator.services.listings import FULFILLMENT_UNKNOWN, Listing, canonicalize_page_one
from market_estimator.services.tier1_estimator import (
    DEMAND_BANDS,
    build_tier1,
    build_tier1_snapshot,
    demand_units,
    price_multiplier,
    total_market_revenue,
)


def test_price_multiplier():
    assert price_multiplier(150) == 0.6
    assert price_multiplier(15) == 1.5
    assert price_multiplier(0) == 1.5
    assert price_multiplier(50) == 1.0


def test_pool_uses_flat_value_without_prices():
    listings = [Listing(asin=f"B00000000{i}") for i in range(1, 4)]
    # no prices: 3 * 50,000 * low-price multiplier
    assert total_market_revenue(listings) == pytest.approx(3 * 50_000 * 1.5)


def test_caps_then_drops_invalid_asins(make_listings):
    listings = make_listings(count=12)
    listings[0].asin = "bad"
    products = build_tier1(listings, max_products=10)
    assert len(products) == 9
    assert all(p.asin != "bad" for p in products)


def test_allocation_never_exceeds_pool(make_listings):
    listings = make_listings(count=20, price=30.0)
    products = build_tier1(listings)
    pool = total_market_revenue(listings)
    assert sum(p.estimated_monthly_revenue for p in products) <= pool + 0.01
    revenues = [p.estimated_monthly_revenue for p in products]
    assert revenues == sorted(revenues, reverse=True)


def test_units_from_revenue_and_price(make_listings):
    listings = make_listings(count=3, price=25.0)
    listings[2].price = None
    products = build_tier1(listings)
    assert products[0].estimated_monthly_units == round(products[0].estimated_monthly_revenue / 25.0)
    assert products[2].estimated_monthly_units == 0


def test_prime_listing_stays_unknown_fulfillment():
    page = canonicalize_page_one([{"asin": "B000000001", "price": 20, "is_prime": True}])
    product = build_tier1(page.listings)[0]
    assert product.fulfillment == FULFILLMENT_UNKNOWN


def test_demand_band_clamping():
    level, band, units = demand_units(20, 2000)
    assert level == "high"
    assert band == DEMAND_BANDS["high"]
    # 20 * 400 * 1.6 = 12,800 lifted to the band floor
    assert units == 15_000

    level, band, units = demand_units(3, 50)
    assert level == "low"
    assert units == 2000


def test_snapshot_aggregates(make_raw_records):
    page = canonicalize_page_one(make_raw_records(count=10, price=30.0, reviews=200))
    snap = build_tier1_snapshot(page.listings)
    assert len(snap.products) == 10
    assert snap.avg_price == 30.0
    assert snap.avg_reviews == 200.0
    assert snap.competition_level == "medium"
    assert snap.to_dict()["demand_units_range"] == list(DEMAND_BANDS["medium"])


def test_empty_input():
    snap = build_tier1_snapshot([])
    assert snap.products == []
    assert snap.total_market_revenue == 0.0
