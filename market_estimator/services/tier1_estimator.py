"""Tier-1 fast estimator -- immediate page-one demand and revenue allocation.

Uses only rank/position and price.  Never reads ``rank_in_category`` and
never performs I/O, so it can run inside the request that fetched the
listings.  Tier-2 refines these numbers later.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from config import MAX_PRODUCTS
from market_estimator.services.listings import Listing, is_valid_asin, normalize_asin
from market_estimator.services.utils import mean, median, positive_or_none

logger = logging.getLogger(__name__)

_RANK_DECAY = 0.7
_BASE_REVENUE_PER_PRICE_UNIT = 1000
_NO_PRICE_REVENUE_PER_LISTING = 50000
_HIGH_PRICE_THRESHOLD = 100
_LOW_PRICE_THRESHOLD = 20
_HIGH_PRICE_MULTIPLIER = 0.6
_LOW_PRICE_MULTIPLIER = 1.5

# Page-one demand bands.  Thresholds were tuned empirically and are due for
# recalibration once enough observations exist.
COMPETITION_ORGANIC_LOW = 8
COMPETITION_ORGANIC_HIGH = 15
COMPETITION_REVIEWS_LOW = 100
COMPETITION_REVIEWS_HIGH = 1500

DEMAND_BANDS: dict[str, tuple[int, int]] = {
    "low": (2000, 6000),
    "medium": (6000, 15000),
    "high": (15000, 35000),
}
_UNITS_PER_ORGANIC_LISTING = 400
_REVIEW_MULTIPLIERS = [  # (median reviews below, multiplier)
    (100, 0.7),
    (500, 1.0),
    (1500, 1.3),
]
_REVIEW_MULTIPLIER_TOP = 1.6


@dataclass
class Tier1Product:
    asin: str
    title: str | None
    brand: str | None
    price: float | None
    rating: float | None
    review_count: int | None
    is_sponsored: bool
    page_position: int | None
    organic_rank: int | None
    fulfillment: str
    estimated_monthly_units: int
    estimated_monthly_revenue: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Tier1Snapshot:
    """Tier-1 products plus the page-level aggregates shown with them."""
    products: list[Tier1Product] = field(default_factory=list)
    total_market_revenue: float = 0.0
    total_page1_units: int = 0
    total_page1_revenue: float = 0.0
    avg_price: float | None = None
    avg_reviews: float | None = None
    avg_rating: float | None = None
    competition_level: str = "low"
    demand_units_range: tuple[int, int] = DEMAND_BANDS["low"]
    demand_units_est: int = 0
    demand_revenue_est: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["demand_units_range"] = list(self.demand_units_range)
        return data


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def price_multiplier(avg_price: float) -> float:
    """Higher average price means lower volume, and vice versa."""
    if avg_price > _HIGH_PRICE_THRESHOLD:
        return _HIGH_PRICE_MULTIPLIER
    if avg_price < _LOW_PRICE_THRESHOLD:
        return _LOW_PRICE_MULTIPLIER
    return 1.0


def average_price(listings: list[Listing]) -> float:
    prices = [p for p in (positive_or_none(l.price) for l in listings) if p is not None]
    return mean(prices)


def total_market_revenue(listings: list[Listing]) -> float:
    """Page-one revenue pool from listing count and average price."""
    if not listings:
        return 0.0
    avg_price = average_price(listings)
    per_listing = avg_price * _BASE_REVENUE_PER_PRICE_UNIT if avg_price > 0 else _NO_PRICE_REVENUE_PER_LISTING
    return len(listings) * per_listing * price_multiplier(avg_price)


def rank_weight(rank: int) -> float:
    return 1.0 / (max(rank, 1) ** _RANK_DECAY)


def classify_competition(organic_count: int, median_reviews: float) -> str:
    """Map organic listing count and median reviews onto a demand band."""
    if organic_count < COMPETITION_ORGANIC_LOW or median_reviews < COMPETITION_REVIEWS_LOW:
        return "low"
    if organic_count < COMPETITION_ORGANIC_HIGH and median_reviews < COMPETITION_REVIEWS_HIGH:
        return "medium"
    return "high"


def review_multiplier(median_reviews: float) -> float:
    for upper, multiplier in _REVIEW_MULTIPLIERS:
        if median_reviews < upper:
            return multiplier
    return _REVIEW_MULTIPLIER_TOP


def demand_units(organic_count: int, median_reviews: float) -> tuple[str, tuple[int, int], int]:
    """Return ``(competition_level, units_range, units)`` for a page.

    Units scale with organic density and review depth, then get clamped
    into the band of the page's competition level.
    """
    level = classify_competition(organic_count, median_reviews)
    low, high = DEMAND_BANDS[level]
    raw_units = organic_count * _UNITS_PER_ORGANIC_LISTING * review_multiplier(median_reviews)
    return level, (low, high), int(round(min(max(raw_units, low), high)))


def page_one_demand(listings: list[Listing]) -> dict:
    """Estimate page-one monthly units from organic density and review depth.

    Returns a dict with ``competition_level``, ``units_range``,
    ``units_est`` and ``revenue_est`` (units times median price).
    """
    organic = [l for l in listings if not l.is_sponsored]
    reviews = [float(l.review_count) for l in listings if l.review_count is not None]
    med_reviews = median(reviews)
    level, (low, high), units = demand_units(len(organic), med_reviews)

    prices = [p for p in (positive_or_none(l.price) for l in listings) if p is not None]
    revenue = round(units * median(prices), 2)
    return {
        "competition_level": level,
        "units_range": (low, high),
        "units_est": units,
        "revenue_est": revenue,
        "median_reviews": med_reviews,
        "organic_count": len(organic),
    }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_tier1(listings: list[Listing], max_products: int = MAX_PRODUCTS) -> list[Tier1Product]:
    """Allocate the page-one revenue pool across listings by rank.

    The input is capped at ``max_products`` first; listings without a valid
    ASIN are then left out entirely rather than given zero.
    """
    capped = list(listings or [])[:max_products]
    if not capped:
        return []

    pool = total_market_revenue(capped)
    count = len(capped)
    products: list[Tier1Product] = []

    for index, listing in enumerate(capped, start=1):
        if not is_valid_asin(listing.asin):
            continue
        rank = listing.organic_rank or listing.page_position or index
        revenue = round(pool * rank_weight(rank) / count, 2)
        price = positive_or_none(listing.price)
        units = int(round(revenue / price)) if price else 0
        products.append(Tier1Product(
            asin=normalize_asin(listing.asin),
            title=listing.title,
            brand=listing.brand,
            price=listing.price,
            rating=listing.rating,
            review_count=listing.review_count,
            is_sponsored=listing.is_sponsored,
            page_position=listing.page_position,
            organic_rank=listing.organic_rank,
            fulfillment=listing.fulfillment,
            estimated_monthly_units=units,
            estimated_monthly_revenue=revenue,
        ))

    dropped = count - len(products)
    if dropped:
        logger.info("Tier-1 excluded %d listings without a valid ASIN", dropped)
    return products


def build_tier1_snapshot(listings: list[Listing], max_products: int = MAX_PRODUCTS) -> Tier1Snapshot:
    """Tier-1 products plus aggregates and the page-one demand band."""
    capped = list(listings or [])[:max_products]
    products = build_tier1(capped, max_products)
    if not capped:
        return Tier1Snapshot()

    prices = [p.price for p in products if positive_or_none(p.price)]
    reviews = [p.review_count for p in products if p.review_count is not None]
    ratings = [p.rating for p in products if p.rating is not None]
    demand = page_one_demand(capped)

    return Tier1Snapshot(
        products=products,
        total_market_revenue=round(total_market_revenue(capped), 2),
        total_page1_units=sum(p.estimated_monthly_units for p in products),
        total_page1_revenue=round(sum(p.estimated_monthly_revenue for p in products), 2),
        avg_price=round(mean(prices), 2) if prices else None,
        avg_reviews=round(mean(reviews), 1) if reviews else None,
        avg_rating=round(mean(ratings), 2) if ratings else None,
        competition_level=demand["competition_level"],
        demand_units_range=demand["units_range"],
        demand_units_est=demand["units_est"],
        demand_revenue_est=demand["revenue_est"],
    )
