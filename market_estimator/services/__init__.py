"""Services package."""
from market_estimator.services.analysis_service import MarketAnalysisError, MarketAnalysisService
from market_estimator.services.brand_moat import BrandMoatVerdict, classify as classify_brand_moat
from market_estimator.services.bsr_curve import estimate_market_units, estimate_units
from market_estimator.services.calibrated_estimator import CalibratedEstimate, CalibratedEstimator
from market_estimator.services.cogs_assumptions import estimate_cogs
from market_estimator.services.enrichment_cache import EnrichmentCache
from market_estimator.services.estimator_store import EstimatorStore
from market_estimator.services.fee_estimator import FeeInfo, estimate_fba_fee_range
from market_estimator.services.listings import Listing, canonicalize_page_one
from market_estimator.services.margin_snapshot import (
    CostOverrideError,
    MarginSnapshot,
    build_margin_snapshot,
    refine_margin_snapshot,
)
from market_estimator.services.rank_enrichment import EnrichmentBudget, RankInfo, enrich_ranks
from market_estimator.services.tier1_estimator import Tier1Product, Tier1Snapshot, build_tier1, build_tier1_snapshot
from market_estimator.services.tier2_refinement import Tier2Refinement, refine

__all__ = [
    "MarketAnalysisError",
    "MarketAnalysisService",
    "BrandMoatVerdict",
    "classify_brand_moat",
    "estimate_units",
    "estimate_market_units",
    "CalibratedEstimate",
    "CalibratedEstimator",
    "estimate_cogs",
    "EnrichmentCache",
    "EstimatorStore",
    "FeeInfo",
    "estimate_fba_fee_range",
    "Listing",
    "canonicalize_page_one",
    "CostOverrideError",
    "MarginSnapshot",
    "build_margin_snapshot",
    "refine_margin_snapshot",
    "EnrichmentBudget",
    "RankInfo",
    "enrich_ranks",
    "Tier1Product",
    "Tier1Snapshot",
    "build_tier1",
    "build_tier1_snapshot",
    "Tier2Refinement",
    "refine",
]
