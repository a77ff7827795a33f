"""Tier-2 refinement -- calibrated totals, confidence, algorithm boosts, brand dominance.

Runs after the Tier-1 response has gone out.  Every step is isolated: a
failing step is logged, named in ``failed_steps`` and left out of the
record, and the remaining steps still run.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field

import numpy as np

from market_estimator.services.bsr_curve import estimate_market_units, estimate_units
from market_estimator.services.calibrated_estimator import (
    MODEL_TYPE_REVENUE,
    MODEL_TYPE_SEARCH_VOLUME,
    CalibratedEstimator,
)
from market_estimator.services.listings import Listing, normalize_asin
from market_estimator.services.market_heuristics import EstimatorInputs, build_estimator_inputs
from market_estimator.services.rank_enrichment import RankInfo
from market_estimator.services.tier1_estimator import Tier1Product
from market_estimator.services.utils import positive_or_none

logger = logging.getLogger(__name__)

_CONFIDENCE_BASE = 50
_SPONSORED_DENSITY_LIMIT = 0.20
_TOP_BRANDS = 5
_BRANDS_LISTED = 10
UNKNOWN_BRAND = "Unknown"


@dataclass
class Tier2Refinement:
    """Refinement record for one snapshot.  Every field but the id may be None."""
    snapshot_id: int
    calibrated_units: float | None = None
    calibrated_revenue: float | None = None
    revenue_range: tuple[float, float] | None = None
    search_volume_range: tuple[float, float] | None = None
    calibration_source: str | None = None
    model_version: str | None = None
    calibration_confidence: str | None = None
    rank_coverage: float | None = None
    confidence_score: int | None = None
    confidence_level: str | None = None
    algorithm_boosts: list[dict] | None = None
    brand_dominance: dict | None = None
    estimator_inputs: dict | None = None
    failed_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("revenue_range", "search_volume_range"):
            if data[key] is not None:
                data[key] = list(data[key])
        return data


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def bsr_totals(
    listings: list[Listing],
    rank_info: dict[str, RankInfo] | None,
    category: str | None = None,
) -> tuple[float | None, float | None, float]:
    """Dampened page-one units and revenue from per-listing ranks.

    Returns ``(units, revenue, coverage)``; units and revenue are None when
    no listing had a usable rank.
    """
    if not listings:
        return None, None, 0.0
    units_list: list[int] = []
    revenue = 0.0
    for listing in listings:
        info = (rank_info or {}).get(normalize_asin(listing.asin))
        rank = info.rank_in_category if info else listing.rank_in_category
        curve_key = (info.category if info and info.category else None) or listing.category or category
        estimate = estimate_units(rank, curve_key)
        if estimate is None:
            continue
        units_list.append(estimate.units)
        revenue += estimate.units * (positive_or_none(listing.price) or 0.0)

    coverage = len(units_list) / len(listings)
    if not units_list:
        return None, None, coverage
    units = estimate_market_units(units_list, len(listings))
    scale = units / sum(units_list)
    return units, revenue * scale, coverage


def score_confidence(products: list, sponsored_density: float | None = None) -> tuple[int, str]:
    """Confidence 0-100 from sample size, review dispersion and ad density."""
    score = _CONFIDENCE_BASE
    count = len(products)
    if count >= 15:
        score += 20
    elif count >= 5:
        score += 10

    reviews = np.array(
        [p.review_count for p in products if p.review_count is not None and p.review_count > 0],
        dtype=float,
    )
    if reviews.size:
        ratio = float(reviews.std() / reviews.mean())
        if ratio < 0.5:
            score += 15
        elif ratio < 1.0:
            score += 5

    if sponsored_density is None:
        sponsored = sum(1 for p in products if p.is_sponsored)
        sponsored_density = sponsored / count if count else 1.0
    if sponsored_density < _SPONSORED_DENSITY_LIMIT:
        score += 15

    score = max(0, min(100, score))
    if score >= 80:
        level = "high"
    elif score >= 50:
        level = "medium"
    else:
        level = "low"
    return score, level


def detect_algorithm_boosts(appearance_asins: list[str]) -> list[dict]:
    """ASINs the page showed two or more times, most frequent first."""
    counts = Counter(normalize_asin(a) for a in appearance_asins if a)
    boosts = [{"asin": asin, "appearances": n} for asin, n in counts.items() if asin and n >= 2]
    boosts.sort(key=lambda b: (-b["appearances"], b["asin"]))
    return boosts


def brand_dominance(products: list[Tier1Product]) -> dict | None:
    """Tier-1 revenue grouped by brand with the top-5 cumulative share."""
    revenue_by_brand: dict[str, float] = {}
    for product in products:
        brand = (product.brand or "").strip() or UNKNOWN_BRAND
        revenue_by_brand[brand] = revenue_by_brand.get(brand, 0.0) + (product.estimated_monthly_revenue or 0.0)

    total = sum(revenue_by_brand.values())
    if total <= 0:
        return None

    ranked = sorted(revenue_by_brand.items(), key=lambda kv: (-kv[1], kv[0]))
    top_share = sum(rev for _, rev in ranked[:_TOP_BRANDS]) / total * 100
    return {
        "top_5_brand_share_pct": round(top_share, 2),
        "brand_count": len(ranked),
        "brands": [
            {"brand": brand, "revenue": round(rev, 2), "revenue_share_pct": round(rev / total * 100, 2)}
            for brand, rev in ranked[:_BRANDS_LISTED]
        ],
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def refine(
    snapshot_id: int,
    listings: list[Listing],
    tier1_products: list[Tier1Product],
    *,
    estimator: CalibratedEstimator,
    marketplace: str,
    appearance_asins: list[str] | None = None,
    rank_info: dict[str, RankInfo] | None = None,
    category: str | None = None,
    keyword: str | None = None,
) -> Tier2Refinement:
    """Build the Tier-2 record for one snapshot.  Never raises for step failures."""
    record = Tier2Refinement(snapshot_id=snapshot_id)

    try:
        units, revenue, coverage = bsr_totals(listings, rank_info, category)
        record.rank_coverage = round(coverage, 3)
        inputs = build_estimator_inputs(
            listings,
            category=category,
            keyword=keyword,
            bsr_units=units,
            bsr_revenue=revenue,
            rank_coverage=coverage,
        )
        record.estimator_inputs = inputs.to_dict()
        _apply_calibration(record, inputs, estimator, marketplace)
    except Exception:
        logger.exception("Tier-2 calibration failed for snapshot %s", snapshot_id)
        record.failed_steps.append("calibration")

    try:
        sponsored = sum(1 for l in listings if l.is_sponsored)
        density = sponsored / len(listings) if listings else None
        record.confidence_score, record.confidence_level = score_confidence(tier1_products, density)
    except Exception:
        logger.exception("Tier-2 confidence scoring failed for snapshot %s", snapshot_id)
        record.failed_steps.append("confidence")

    try:
        asins = appearance_asins if appearance_asins is not None else [l.asin for l in listings]
        record.algorithm_boosts = detect_algorithm_boosts(asins)
    except Exception:
        logger.exception("Tier-2 algorithm boost detection failed for snapshot %s", snapshot_id)
        record.failed_steps.append("algorithm_boosts")

    try:
        record.brand_dominance = brand_dominance(tier1_products)
    except Exception:
        logger.exception("Tier-2 brand dominance failed for snapshot %s", snapshot_id)
        record.failed_steps.append("brand_dominance")

    return record


def _apply_calibration(
    record: Tier2Refinement,
    inputs: EstimatorInputs,
    estimator: CalibratedEstimator,
    marketplace: str,
) -> None:
    revenue = estimator.estimate(inputs, marketplace, MODEL_TYPE_REVENUE)
    record.calibrated_revenue = revenue.center
    record.revenue_range = (revenue.low, revenue.high)
    record.calibration_source = revenue.source
    record.model_version = revenue.model_version
    record.calibration_confidence = revenue.confidence

    price = inputs.avg_price or 0.0
    record.calibrated_units = round(revenue.center / price, 1) if price > 0 else None

    volume = estimator.estimate(inputs, marketplace, MODEL_TYPE_SEARCH_VOLUME)
    record.search_volume_range = (volume.low, volume.high)
