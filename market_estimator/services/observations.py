"""Observation builder -- turn a finished analysis into an append-only training record."""
from __future__ import annotations

import logging

from market_estimator.services.calibrated_estimator import MODEL_TYPE_REVENUE, MODEL_TYPE_SEARCH_VOLUME
from market_estimator.services.estimator_store import EstimatorStore
from market_estimator.services.listings import Listing, is_valid_asin
from market_estimator.services.tier1_estimator import Tier1Snapshot
from market_estimator.services.tier2_refinement import Tier2Refinement
from market_estimator.services.utils import mean, median, positive_or_none

logger = logging.getLogger(__name__)

_THIN_PAGE_LISTINGS = 5


def summarize_listings(listings: list[Listing]) -> dict:
    prices = [p for p in (positive_or_none(l.price) for l in listings) if p is not None]
    reviews = [float(l.review_count) for l in listings if l.review_count is not None]
    ratings = [l.rating for l in listings if l.rating is not None]
    brands = {l.brand.strip().lower() for l in listings if l.brand and l.brand.strip()}
    sponsored = sum(1 for l in listings if l.is_sponsored)
    return {
        "listing_count": len(listings),
        "organic_count": len(listings) - sponsored,
        "sponsored_count": sponsored,
        "avg_price": round(mean(prices), 2) if prices else None,
        "median_price": round(median(prices), 2) if prices else None,
        "avg_reviews": round(mean(reviews), 1) if reviews else None,
        "median_reviews": median(reviews) if reviews else None,
        "avg_rating": round(mean(ratings), 2) if ratings else None,
        "brand_count": len(brands),
    }


def data_quality_flags(listings: list[Listing], refinement: Tier2Refinement | None) -> dict:
    """Coverage numbers and warnings that let training skip weak rows."""
    count = len(listings)
    with_price = sum(1 for l in listings if positive_or_none(l.price) is not None)
    with_reviews = sum(1 for l in listings if l.review_count is not None)
    invalid = sum(1 for l in listings if not is_valid_asin(l.asin))
    return {
        "price_coverage": round(with_price / count, 3) if count else 0.0,
        "review_coverage": round(with_reviews / count, 3) if count else 0.0,
        "rank_coverage": refinement.rank_coverage if refinement else None,
        "invalid_asins": invalid,
        "thin_page": count < _THIN_PAGE_LISTINGS,
        "failed_steps": list(refinement.failed_steps) if refinement else [],
    }


def _output_range(low_high, source: str | None, version: str | None) -> dict | None:
    if not low_high:
        return None
    low, high = low_high
    return {"low": low, "high": high, "source": source, "model_version": version}


def build_observation(
    *,
    marketplace: str,
    keyword: str | None,
    snapshot_id: int | None,
    category: str | None,
    listings: list[Listing],
    tier1: Tier1Snapshot,
    refinement: Tier2Refinement | None = None,
    brand_moat: dict | None = None,
    reference: dict | None = None,
) -> dict:
    """Keyword arguments for ``EstimatorStore.append_observation``."""
    outputs: dict = {}
    inputs: dict = {}
    if refinement is not None:
        inputs = refinement.estimator_inputs or {}
        revenue = _output_range(refinement.revenue_range, refinement.calibration_source, refinement.model_version)
        volume = _output_range(refinement.search_volume_range, refinement.calibration_source, refinement.model_version)
        if revenue:
            outputs[MODEL_TYPE_REVENUE] = revenue
        if volume:
            outputs[MODEL_TYPE_SEARCH_VOLUME] = volume

    tier1_summary = tier1.to_dict()
    tier1_summary.pop("products", None)
    tier2_payload = refinement.to_dict() if refinement is not None else None
    if tier2_payload is not None:
        tier2_payload["brand_moat"] = brand_moat

    return {
        "marketplace": marketplace,
        "keyword": keyword,
        "snapshot_id": snapshot_id,
        "category": category,
        "listings_summary": summarize_listings(listings),
        "estimator_inputs": inputs,
        "estimator_outputs": outputs,
        "tier1": tier1_summary,
        "tier2": tier2_payload,
        "reference": reference,
        "data_quality": data_quality_flags(listings, refinement),
    }


def record_observation(store: EstimatorStore, **kwargs) -> int | None:
    """Build and append an observation; failures are logged, never raised."""
    try:
        payload = build_observation(**kwargs)
    except Exception:
        logger.exception("Could not build observation for snapshot %s", kwargs.get("snapshot_id"))
        return None
    return store.append_observation(**payload)
