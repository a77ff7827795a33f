"""Market analysis service -- wires Tier-1, Tier-2, brand moat, margins and observations."""
import json
import logging
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor

from sqlalchemy.exc import IntegrityError

from config import (
    DEFAULT_MARKETPLACE,
    ENRICHMENT_MAX_CALLS,
    MAX_PRODUCTS,
    TIER1_BUDGET_SECONDS,
    TIER2_WORKERS,
)
from market_estimator.models.analysis_snapshot import AnalysisSnapshot, Tier2RefinementRecord
from market_estimator.models.database import get_session
from market_estimator.services import brand_moat
from market_estimator.services.calibrated_estimator import CalibratedEstimator
from market_estimator.services.enrichment_cache import EnrichmentCache
from market_estimator.services.estimator_store import EstimatorStore
from market_estimator.services.fee_estimator import FeeInfo
from market_estimator.services.listings import Listing, canonicalize_page_one
from market_estimator.services.margin_snapshot import (
    MODE_ASIN,
    MODE_KEYWORD,
    MarginSnapshot,
    build_margin_snapshot,
    refine_margin_snapshot,
)
from market_estimator.services.observations import record_observation
from market_estimator.services.rank_enrichment import EnrichmentBudget, RankSource, enrich_ranks
from market_estimator.services.tier1_estimator import Tier1Product, Tier1Snapshot, build_tier1_snapshot
from market_estimator.services.tier2_refinement import refine

logger = logging.getLogger(__name__)

TIER2_PENDING = "pending"
TIER2_RUNNING = "running"
TIER2_COMPLETE = "complete"
TIER2_FAILED = "failed"


class MarketAnalysisError(Exception):
    """Raised when an analysis cannot produce a Tier-1 result."""


class MarketAnalysisService:
    """Host-facing entry point for keyword and ASIN analyses.

    Tier-1 runs inline and is persisted as an ``AnalysisSnapshot``.  Tier-2
    is submitted to ``executor`` when one is configured, or left pending
    for the scheduler's sweep.
    """

    def __init__(
        self,
        session_factory=None,
        estimator: CalibratedEstimator | None = None,
        rank_source: RankSource | None = None,
        cache: EnrichmentCache | None = None,
        marketplace: str = DEFAULT_MARKETPLACE,
        max_products: int = MAX_PRODUCTS,
        enrichment_max_calls: int = ENRICHMENT_MAX_CALLS,
        executor: Executor | None = None,
    ):
        self._session_factory = session_factory or get_session
        self.store = estimator.store if estimator else EstimatorStore(self._session_factory)
        self.estimator = estimator or CalibratedEstimator(self.store)
        self.rank_source = rank_source
        self.cache = cache or EnrichmentCache(self._session_factory)
        self.marketplace = marketplace
        self.max_products = max_products
        self.enrichment_max_calls = enrichment_max_calls
        self.executor = executor

    @classmethod
    def with_background_workers(cls, workers: int = TIER2_WORKERS, **kwargs) -> "MarketAnalysisService":
        return cls(executor=ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tier2"), **kwargs)

    # ------------------------------------------------------------------
    # Tier-1
    # ------------------------------------------------------------------

    def analyze_keyword(self, keyword: str, raw_listings: list[dict], category: str | None = None) -> dict:
        """Run Tier-1 for a keyword's page-one results and persist the snapshot.

        Parameters
        ----------
        keyword : str
            The search term the listings were fetched for.
        raw_listings : list[dict]
            Raw search-result records from the listing source, in page order.
        category : str | None
            Optional category hint for curves, COGS and fees.

        Returns
        -------
        dict with keys: snapshot_id, mode, tier1, brand_moat, tier2_status
        """
        return self._analyze(MODE_KEYWORD, keyword, raw_listings, category)

    def analyze_asin(self, asin: str, raw_listing: dict, category: str | None = None) -> dict:
        """Run Tier-1 for a single product listing."""
        record = dict(raw_listing or {})
        record.setdefault("asin", asin)
        return self._analyze(MODE_ASIN, asin, [record], category)

    def _analyze(self, mode: str, query: str, raw_listings: list[dict], category: str | None) -> dict:
        if not raw_listings:
            raise MarketAnalysisError(f"No listings returned for {query!r}")

        started = time.monotonic()
        page = canonicalize_page_one(raw_listings)
        listings = page.listings[: self.max_products]
        tier1 = build_tier1_snapshot(listings, self.max_products)
        if not tier1.products:
            raise MarketAnalysisError(f"No listings with a valid ASIN for {query!r}")

        moat = brand_moat.classify(tier1.products) if mode == MODE_KEYWORD else None
        elapsed = time.monotonic() - started
        if elapsed > TIER1_BUDGET_SECONDS:
            logger.warning("Tier-1 for %r took %.1fs (budget %.0fs)", query, elapsed, TIER1_BUDGET_SECONDS)

        snapshot_id = self._save_snapshot(mode, query, category, page.appearance_asins, listings, tier1, moat)
        if self.executor is not None:
            self.submit_refinement(snapshot_id)

        return {
            "snapshot_id": snapshot_id,
            "mode": mode,
            "tier1": tier1.to_dict(),
            "brand_moat": moat.to_dict() if moat else None,
            "tier2_status": TIER2_PENDING,
        }

    def _save_snapshot(self, mode, query, category, appearance_asins, listings, tier1, moat) -> int:
        session = self._session_factory()
        try:
            snapshot = AnalysisSnapshot(
                marketplace=self.marketplace,
                mode=mode,
                query=query,
                category=category,
                raw_appearances_json=json.dumps(appearance_asins),
                listings_json=json.dumps([l.to_dict() for l in listings]),
                tier1_json=json.dumps(tier1.to_dict()),
                brand_moat_json=json.dumps(moat.to_dict()) if moat else None,
                tier2_status=TIER2_PENDING,
            )
            session.add(snapshot)
            session.commit()
            return snapshot.id
        except Exception:
            session.rollback()
            logger.exception("Failed to save analysis snapshot for %r", query)
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Tier-2
    # ------------------------------------------------------------------

    def submit_refinement(self, snapshot_id: int) -> Future | None:
        """Queue Tier-2 on the executor; errors only reach the log."""
        if self.executor is None:
            return None
        future = self.executor.submit(self.run_refinement, snapshot_id)
        future.add_done_callback(lambda f: _log_future_failure(f, snapshot_id))
        return future

    def run_refinement(self, snapshot_id: int, reference: dict | None = None) -> dict | None:
        """Run Tier-2 for one snapshot and append the observation.

        Only one caller refines a snapshot: the run first moves it from
        pending (or failed) to running, and a caller that loses that race
        gets the stored payload, or None while the other run is still going.

        Returns the stored refinement payload (the existing one when the
        snapshot was already refined), or None on failure.
        """
        session = self._session_factory()
        try:
            snapshot = session.get(AnalysisSnapshot, snapshot_id)
            if snapshot is None:
                logger.warning("Tier-2 requested for unknown snapshot %s", snapshot_id)
                return None
            if snapshot.refinement is not None:
                return snapshot.refinement.payload
        finally:
            session.close()

        if not self._claim(snapshot_id):
            logger.debug("Snapshot %s is already being refined", snapshot_id)
            return self._stored_payload(snapshot_id)

        try:
            listings, tier1_data, products, appearance_asins, moat, mode, query, category = (
                self._load_for_refinement(snapshot_id)
            )
        except (ValueError, TypeError, KeyError):
            logger.exception("Snapshot %s has an unreadable payload", snapshot_id)
            self._save_refinement(snapshot_id, None, TIER2_FAILED)
            return None

        try:
            rank_info = self._enrich(listings)
            refinement = refine(
                snapshot_id,
                listings,
                products,
                estimator=self.estimator,
                marketplace=self.marketplace,
                appearance_asins=appearance_asins,
                rank_info=rank_info,
                category=category,
                keyword=query if mode == MODE_KEYWORD else None,
            )
            payload = refinement.to_dict()
            stored = self._save_refinement(snapshot_id, payload, TIER2_COMPLETE)
        except Exception:
            logger.exception("Tier-2 refinement failed for snapshot %s", snapshot_id)
            self._save_refinement(snapshot_id, None, TIER2_FAILED)
            return None

        if not stored:
            # another run stored its record first and owns the observation
            return self._stored_payload(snapshot_id)

        record_observation(
            self.store,
            marketplace=self.marketplace,
            keyword=query if mode == MODE_KEYWORD else None,
            snapshot_id=snapshot_id,
            category=category,
            listings=listings,
            tier1=_tier1_from_dict(tier1_data, products),
            refinement=refinement,
            brand_moat=moat,
            reference=reference,
        )
        return payload

    def run_pending_refinements(self, limit: int = 20) -> int:
        """Refine the oldest pending snapshots. Returns how many completed."""
        session = self._session_factory()
        try:
            ids = [
                sid for (sid,) in session.query(AnalysisSnapshot.id)
                .filter(AnalysisSnapshot.tier2_status == TIER2_PENDING)
                .order_by(AnalysisSnapshot.created_at, AnalysisSnapshot.id)
                .limit(limit)
                .all()
            ]
        finally:
            session.close()

        done = 0
        for snapshot_id in ids:
            if self.run_refinement(snapshot_id) is not None:
                done += 1
        if ids:
            logger.info("Tier-2 sweep: %d/%d snapshots refined", done, len(ids))
        return done

    def requeue_interrupted(self) -> int:
        """Put snapshots left running by a previous process back to pending.

        Call once at startup, before any refinement is submitted.
        """
        session = self._session_factory()
        try:
            count = (
                session.query(AnalysisSnapshot)
                .filter(AnalysisSnapshot.tier2_status == TIER2_RUNNING)
                .update({AnalysisSnapshot.tier2_status: TIER2_PENDING}, synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        if count:
            logger.info("Requeued %d interrupted Tier-2 refinements", count)
        return count

    def _load_for_refinement(self, snapshot_id: int) -> tuple:
        session = self._session_factory()
        try:
            snapshot = session.get(AnalysisSnapshot, snapshot_id)
            tier1_data = snapshot.tier1
            return (
                [Listing.from_dict(d) for d in json.loads(snapshot.listings_json)],
                tier1_data,
                [Tier1Product(**p) for p in tier1_data.get("products", [])],
                json.loads(snapshot.raw_appearances_json or "[]"),
                json.loads(snapshot.brand_moat_json) if snapshot.brand_moat_json else None,
                snapshot.mode,
                snapshot.query,
                snapshot.category,
            )
        finally:
            session.close()

    def _claim(self, snapshot_id: int) -> bool:
        session = self._session_factory()
        try:
            claimed = (
                session.query(AnalysisSnapshot)
                .filter(
                    AnalysisSnapshot.id == snapshot_id,
                    AnalysisSnapshot.tier2_status.in_([TIER2_PENDING, TIER2_FAILED]),
                )
                .update({AnalysisSnapshot.tier2_status: TIER2_RUNNING}, synchronize_session=False)
            )
            session.commit()
            return claimed == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _stored_payload(self, snapshot_id: int) -> dict | None:
        session = self._session_factory()
        try:
            record = (
                session.query(Tier2RefinementRecord)
                .filter(Tier2RefinementRecord.snapshot_id == snapshot_id)
                .first()
            )
            return record.payload if record else None
        finally:
            session.close()

    def _enrich(self, listings: list[Listing]) -> dict | None:
        if self.rank_source is None:
            return None
        try:
            budget = EnrichmentBudget(self.enrichment_max_calls)
            result = enrich_ranks(listings, self.rank_source, self.cache, budget)
            logger.info("Rank enrichment: %s", result.summary())
            return result.ranks
        except Exception:
            logger.exception("Rank enrichment failed; continuing without ranks")
            return None

    def _save_refinement(self, snapshot_id: int, payload: dict | None, status: str) -> bool:
        """Store the outcome. Returns False when a record already existed."""
        session = self._session_factory()
        try:
            snapshot = session.get(AnalysisSnapshot, snapshot_id)
            if snapshot is None:
                return False
            if snapshot.refinement is not None:
                # a stored record always wins over a later failure
                snapshot.tier2_status = TIER2_COMPLETE
                session.commit()
                return False
            if payload is not None:
                session.add(Tier2RefinementRecord(snapshot_id=snapshot_id, payload_json=json.dumps(payload)))
            snapshot.tier2_status = status
            session.commit()
            return payload is not None
        except IntegrityError:
            session.rollback()
            logger.info("Snapshot %s was refined concurrently; keeping the stored record", snapshot_id)
            self._mark_complete(snapshot_id)
            return False
        except Exception:
            session.rollback()
            logger.exception("Failed to store Tier-2 result for snapshot %s", snapshot_id)
            raise
        finally:
            session.close()

    def _mark_complete(self, snapshot_id: int) -> None:
        session = self._session_factory()
        try:
            session.query(AnalysisSnapshot).filter(AnalysisSnapshot.id == snapshot_id).update(
                {AnalysisSnapshot.tier2_status: TIER2_COMPLETE}, synchronize_session=False
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Margins
    # ------------------------------------------------------------------

    def build_margin(
        self,
        snapshot_id: int,
        sourcing_model: str | None,
        fee_info: FeeInfo | None = None,
        user_overrides: dict | None = None,
    ) -> dict:
        """Build and store the margin snapshot for an analysis."""
        session = self._session_factory()
        try:
            snapshot = self._require_snapshot(session, snapshot_id)
            tier1 = snapshot.tier1
            products = tier1.get("products", [])
            asin_price = products[0].get("price") if snapshot.mode == MODE_ASIN and products else None
            margin = build_margin_snapshot(
                snapshot.mode,
                sourcing_model,
                asin_price=asin_price,
                market_avg_price=tier1.get("avg_price") if snapshot.mode == MODE_KEYWORD else None,
                category=snapshot.category,
                fee_info=fee_info,
                user_overrides=user_overrides,
            )
            snapshot.margin_json = json.dumps(margin.to_dict())
            session.commit()
            return margin.to_dict()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def refine_margin(self, snapshot_id: int, overrides: dict | None, fee_info: FeeInfo | None = None) -> dict:
        """Recompute the stored margin snapshot with user overrides."""
        session = self._session_factory()
        try:
            snapshot = self._require_snapshot(session, snapshot_id)
            if not snapshot.margin_json:
                raise MarketAnalysisError(f"Snapshot {snapshot_id} has no margin snapshot to refine")
            margin = MarginSnapshot.from_dict(snapshot.margin)
            refine_margin_snapshot(margin, overrides, fee_info)
            snapshot.margin_json = json.dumps(margin.to_dict())
            session.commit()
            return margin.to_dict()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Reads / housekeeping
    # ------------------------------------------------------------------

    def get_analysis(self, snapshot_id: int) -> dict:
        session = self._session_factory()
        try:
            snapshot = self._require_snapshot(session, snapshot_id)
            return {
                "snapshot_id": snapshot.id,
                "mode": snapshot.mode,
                "query": snapshot.query,
                "tier1": snapshot.tier1,
                "brand_moat": json.loads(snapshot.brand_moat_json) if snapshot.brand_moat_json else None,
                "tier2_status": snapshot.tier2_status,
                "tier2": snapshot.refinement.payload if snapshot.refinement else None,
                "margin": snapshot.margin,
            }
        finally:
            session.close()

    def retrain(self, marketplace: str | None = None) -> dict:
        return self.estimator.retrain(marketplace or self.marketplace)

    def shutdown(self, wait: bool = True) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=wait)

    @staticmethod
    def _require_snapshot(session, snapshot_id: int) -> AnalysisSnapshot:
        snapshot = session.get(AnalysisSnapshot, snapshot_id)
        if snapshot is None:
            raise MarketAnalysisError(f"Unknown analysis snapshot {snapshot_id}")
        return snapshot


def _tier1_from_dict(data: dict, products: list[Tier1Product]) -> Tier1Snapshot:
    values = {k: v for k, v in data.items() if k != "products"}
    if "demand_units_range" in values:
        values["demand_units_range"] = tuple(values["demand_units_range"])
    return Tier1Snapshot(products=products, **values)


def _log_future_failure(future: Future, snapshot_id: int) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Background Tier-2 for snapshot %s raised", snapshot_id, exc_info=exc)
