"""Persistence for estimator model versions and market observations."""
import json
import logging
from datetime import datetime

from sqlalchemy import func

from market_estimator.models.database import get_session, utcnow
from market_estimator.models.estimator_model import ActiveEstimatorModel, EstimatorModelVersion
from market_estimator.models.market_observation import MarketObservation
from market_estimator.services.utils import normalize_keyword

logger = logging.getLogger(__name__)

VERSION_PREFIX = "v2.0"


def version_for_date(trained_at: datetime, existing: set[str] | None = None) -> str:
    """Build ``v2.0.YYYYMMDD``, adding ``.2``, ``.3``... for same-day retrains."""
    base = f"{VERSION_PREFIX}.{trained_at:%Y%m%d}"
    existing = existing or set()
    if base not in existing:
        return base
    suffix = 2
    while f"{base}.{suffix}" in existing:
        suffix += 1
    return f"{base}.{suffix}"


class EstimatorStore:
    """Versioned model store plus the append-only observation log.

    Each training run inserts an immutable ``EstimatorModelVersion``; the
    active model is a pointer row moved in the same transaction, so readers
    see either the old or the new version, never neither.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def get_active_model(self, marketplace: str, model_type: str) -> dict | None:
        """Return the active version for a key as a dict, or None."""
        session = self._session_factory()
        try:
            pointer = (
                session.query(ActiveEstimatorModel)
                .filter_by(marketplace=marketplace, model_type=model_type)
                .first()
            )
            if pointer is None:
                return None
            version = session.get(EstimatorModelVersion, pointer.version_id)
            return version.to_dict() if version is not None else None
        finally:
            session.close()

    def activate_model(
        self,
        marketplace: str,
        model_type: str,
        coefficients: dict,
        training_rows: int,
        diagnostics: dict | None = None,
        trained_at: datetime | None = None,
    ) -> dict:
        """Insert a new version and point the active record at it atomically."""
        trained_at = trained_at or utcnow()
        diagnostics = diagnostics or {}
        session = self._session_factory()
        try:
            existing = {
                v for (v,) in session.query(EstimatorModelVersion.model_version)
                .filter_by(marketplace=marketplace, model_type=model_type)
                .all()
            }
            version = EstimatorModelVersion(
                marketplace=marketplace,
                model_type=model_type,
                model_version=version_for_date(trained_at, existing),
                coefficients_json=json.dumps(coefficients, sort_keys=True),
                trained_at=trained_at,
                training_rows=training_rows,
                r_squared=diagnostics.get("r_squared"),
                mae=diagnostics.get("mae"),
            )
            session.add(version)
            session.flush()

            pointer = (
                session.query(ActiveEstimatorModel)
                .filter_by(marketplace=marketplace, model_type=model_type)
                .first()
            )
            if pointer is None:
                session.add(ActiveEstimatorModel(
                    marketplace=marketplace,
                    model_type=model_type,
                    version_id=version.id,
                    activated_at=utcnow(),
                ))
            else:
                pointer.version_id = version.id
                pointer.activated_at = utcnow()
            session.commit()
            logger.info(
                "Activated %s model %s for %s (%d rows)",
                model_type, version.model_version, marketplace, training_rows,
            )
            return version.to_dict()
        except Exception:
            session.rollback()
            logger.exception("Failed to activate %s model for %s", model_type, marketplace)
            raise
        finally:
            session.close()

    def list_versions(self, marketplace: str, model_type: str) -> list[dict]:
        session = self._session_factory()
        try:
            rows = (
                session.query(EstimatorModelVersion)
                .filter_by(marketplace=marketplace, model_type=model_type)
                .order_by(EstimatorModelVersion.trained_at.desc(), EstimatorModelVersion.id.desc())
                .all()
            )
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def append_observation(
        self,
        marketplace: str,
        *,
        keyword: str | None = None,
        snapshot_id: int | None = None,
        category: str | None = None,
        listings_summary: dict | None = None,
        estimator_inputs: dict | None = None,
        estimator_outputs: dict | None = None,
        tier1: dict | None = None,
        tier2: dict | None = None,
        reference: dict | None = None,
        data_quality: dict | None = None,
        created_at: datetime | None = None,
    ) -> int | None:
        """Append one observation; returns its id, or None on failure."""
        session = self._session_factory()
        try:
            row = MarketObservation(
                marketplace=marketplace,
                keyword=keyword,
                normalized_keyword=normalize_keyword(keyword) if keyword else None,
                snapshot_id=snapshot_id,
                category=category,
                listings_summary_json=json.dumps(listings_summary or {}),
                estimator_inputs_json=json.dumps(estimator_inputs or {}),
                estimator_outputs_json=json.dumps(estimator_outputs or {}),
                tier1_json=json.dumps(tier1) if tier1 is not None else None,
                tier2_json=json.dumps(tier2) if tier2 is not None else None,
                reference_json=json.dumps(reference) if reference is not None else None,
                data_quality_json=json.dumps(data_quality or {}),
                created_at=created_at or utcnow(),
            )
            session.add(row)
            session.commit()
            return row.id
        except Exception:
            logger.exception("Error appending market observation")
            session.rollback()
            return None
        finally:
            session.close()

    def count_observations(self, marketplace: str, since: datetime | None = None) -> int:
        """Count observations created strictly after ``since`` (all when None)."""
        session = self._session_factory()
        try:
            query = session.query(func.count(MarketObservation.id)).filter(
                MarketObservation.marketplace == marketplace
            )
            if since is not None:
                query = query.filter(MarketObservation.created_at > since)
            return int(query.scalar() or 0)
        finally:
            session.close()

    def read_observations(
        self,
        marketplace: str,
        since: datetime | None = None,
        limit: int = 1000,
    ) -> list[dict]:
        """Most recent observations first, bounded by ``limit``."""
        session = self._session_factory()
        try:
            query = session.query(MarketObservation).filter(
                MarketObservation.marketplace == marketplace
            )
            if since is not None:
                query = query.filter(MarketObservation.created_at > since)
            rows = (
                query.order_by(MarketObservation.created_at.desc(), MarketObservation.id.desc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in rows]
        finally:
            session.close()
