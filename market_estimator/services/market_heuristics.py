"""Heuristic market baselines -- search volume and total revenue from page-one signals.

These are the deterministic starting points the calibrated estimator
corrects.  They never need a trained model.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields

from market_estimator.services.listings import Listing
from market_estimator.services.tier1_estimator import demand_units
from market_estimator.services.utils import is_finite_number, mean, median, positive_or_none

# Rank data must cover at least this share of listings before the revenue
# baseline switches from the page-one demand band to BSR-derived units.
MIN_RANK_COVERAGE = 0.5

_SEARCHES_PER_LISTING = 1500
_TOTAL_RESULTS_DIVISOR = 50
_TOTAL_RESULTS_CAP = 200_000
_REVIEW_MULT_BOUNDS = (0.8, 1.5)
_SPONSORED_MULT_BASE = 0.9
_SPONSORED_MULT_SLOPE = 0.6
_LOW_DENSITY_LISTINGS = 20

_SEARCH_CATEGORY_MULTIPLIERS = {
    "electronics": 1.5,
    "beauty": 1.3,
    "home": 1.0,
    "health": 0.9,
    "default": 1.0,
}

_SEARCH_CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("electronics", ("electronic", "tech", "computer", "phone", "tablet", "headphone", "speaker", "smartwatch")),
    ("beauty", ("beauty", "cosmetic", "skincare", "makeup", "hair", "perfume", "nail")),
    ("home", ("home", "kitchen", "cookware", "furniture", "decor", "bedding")),
    ("health", ("fitness", "health", "supplement", "vitamin", "workout", "exercise", "gym")),
]


@dataclass
class EstimatorInputs:
    """Page-level signals fed to both baselines and the calibration layer."""
    page1_count: int = 0
    organic_count: int = 0
    sponsored_count: int = 0
    avg_reviews: float | None = None
    median_reviews: float | None = None
    avg_price: float | None = None
    median_price: float | None = None
    category: str | None = None
    keyword: str | None = None
    total_results: int | None = None
    bsr_units: float | None = None
    bsr_revenue: float | None = None
    rank_coverage: float = 0.0

    @property
    def sponsored_pct(self) -> float:
        if self.page1_count <= 0:
            return 0.0
        return self.sponsored_count / self.page1_count * 100

    @property
    def price_band(self) -> str:
        price = self.avg_price or 0
        if price > 100:
            return "premium"
        if price < 20:
            return "budget"
        return "mid"

    def features(self) -> dict[str, float]:
        """Raw feature values used by the linear correction."""
        reviews = self.avg_reviews or 0.0
        return {
            "page1_count": float(self.page1_count),
            "avg_reviews_log": math.log(reviews + 1) if reviews > 0 else 0.0,
            "sponsored_pct": self.sponsored_pct,
            "avg_price": float(self.avg_price or 0.0),
        }

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "EstimatorInputs":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


def build_estimator_inputs(
    listings: list[Listing],
    *,
    category: str | None = None,
    keyword: str | None = None,
    total_results: int | None = None,
    bsr_units: float | None = None,
    bsr_revenue: float | None = None,
    rank_coverage: float = 0.0,
) -> EstimatorInputs:
    prices = [p for p in (positive_or_none(l.price) for l in listings) if p is not None]
    reviews = [float(l.review_count) for l in listings if l.review_count is not None]
    sponsored = sum(1 for l in listings if l.is_sponsored)
    return EstimatorInputs(
        page1_count=len(listings),
        organic_count=len(listings) - sponsored,
        sponsored_count=sponsored,
        avg_reviews=mean(reviews) if reviews else None,
        median_reviews=median(reviews) if reviews else None,
        avg_price=mean(prices) if prices else None,
        median_price=median(prices) if prices else None,
        category=category,
        keyword=keyword,
        total_results=total_results,
        bsr_units=bsr_units,
        bsr_revenue=bsr_revenue,
        rank_coverage=rank_coverage,
    )


def search_category(text: str | None) -> str:
    if not text:
        return "default"
    lowered = text.lower()
    for bucket, keywords in _SEARCH_CATEGORY_KEYWORDS:
        if any(kw in lowered for kw in keywords):
            return bucket
    return "default"


def search_volume_baseline(inputs: EstimatorInputs) -> dict:
    """Monthly search estimate from page-one density and demand proxies.

    Returns
    -------
    dict with keys: estimate, confidence, category_bucket
    """
    if is_finite_number(inputs.total_results) and inputs.total_results > 0:
        base = min(inputs.total_results / _TOTAL_RESULTS_DIVISOR, _TOTAL_RESULTS_CAP)
    else:
        base = inputs.page1_count * _SEARCHES_PER_LISTING

    bucket = search_category(inputs.category or inputs.keyword)
    category_mult = _SEARCH_CATEGORY_MULTIPLIERS.get(bucket, 1.0)

    review_mult = 1.0
    if inputs.avg_reviews and inputs.avg_reviews > 0:
        review_mult = 1.0 + (math.log10(max(inputs.avg_reviews, 100)) - 2) * 0.15
        review_mult = max(_REVIEW_MULT_BOUNDS[0], min(_REVIEW_MULT_BOUNDS[1], review_mult))

    sponsored_mult = 1.0
    if inputs.sponsored_count > 0 and inputs.page1_count > 0:
        ratio = inputs.sponsored_count / inputs.page1_count
        sponsored_mult = _SPONSORED_MULT_BASE + ratio * _SPONSORED_MULT_SLOPE

    confidence = "medium"
    if inputs.total_results is None and inputs.page1_count < _LOW_DENSITY_LISTINGS:
        confidence = "low"
    if inputs.avg_reviews is None:
        confidence = "low"

    return {
        "estimate": base * category_mult * review_mult * sponsored_mult,
        "confidence": confidence,
        "category_bucket": bucket,
    }


def revenue_baseline(inputs: EstimatorInputs) -> dict:
    """Monthly page-one revenue estimate.

    Uses BSR-derived totals when rank data covers enough listings,
    otherwise the page-one demand band times the median price.

    Returns
    -------
    dict with keys: estimate, units, source, confidence, competition_level
    """
    median_reviews = inputs.median_reviews or 0.0
    level, _, band_units = demand_units(inputs.organic_count, median_reviews)

    if (
        inputs.rank_coverage >= MIN_RANK_COVERAGE
        and positive_or_none(inputs.bsr_revenue) is not None
    ):
        return {
            "estimate": float(inputs.bsr_revenue),
            "units": float(inputs.bsr_units or 0.0),
            "source": "bsr",
            "confidence": "medium",
            "competition_level": level,
        }

    price = inputs.median_price or inputs.avg_price or 0.0
    return {
        "estimate": band_units * price,
        "units": float(band_units),
        "source": "page_one_demand",
        "confidence": "low",
        "competition_level": level,
    }


def format_range(low: float, high: float) -> str:
    """Human-readable range such as ``'10k-20k'`` or ``'1.2M-1.8M'``."""
    if low >= 1_000_000 or high >= 1_000_000:
        def fmt(v):
            return f"{v / 1_000_000:.1f}".rstrip("0").rstrip(".") + "M"
    elif low >= 1000 or high >= 1000:
        def fmt(v):
            return f"{round(v / 1000)}k"
    else:
        def fmt(v):
            return f"{round(v)}"
    return f"{fmt(low)}-{fmt(high)}"
