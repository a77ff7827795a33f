"""Database models package."""
from market_estimator.models.database import (
    Base,
    engine,
    SessionLocal,
    ImmutableRecordError,
    get_session,
    with_db,
    init_db,
    utcnow,
)
from market_estimator.models.estimator_model import EstimatorModelVersion, ActiveEstimatorModel
from market_estimator.models.market_observation import MarketObservation
from market_estimator.models.analysis_snapshot import AnalysisSnapshot, Tier2RefinementRecord
from market_estimator.models.enrichment_cache_model import EnrichmentCacheEntry

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "ImmutableRecordError",
    "get_session",
    "with_db",
    "init_db",
    "utcnow",
    "EstimatorModelVersion",
    "ActiveEstimatorModel",
    "MarketObservation",
    "AnalysisSnapshot",
    "Tier2RefinementRecord",
    "EnrichmentCacheEntry",
]
