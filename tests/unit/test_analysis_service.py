import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from market_estimator.models.analysis_snapshot import AnalysisSnapshot, Tier2RefinementRecord
from market_estimator.services import analysis_service
from market_estimator.services.analysis_service import MarketAnalysisError, MarketAnalysisService
from market_estimator.services.calibrated_estimator import SOURCE_HEURISTIC
from market_estimator.services.margin_snapshot import CostOverrideError
from market_estimator.services.rank_enrichment import RankInfo


@pytest.fixture
def service(session_factory):
    return MarketAnalysisService(session_factory=session_factory)


@pytest.fixture
def keyword_records(make_raw_records):
    records = make_raw_records(count=10, price=25.0, reviews=300, brand="Acme")
    # the top listing shows up again as a sponsored slot
    records.append(dict(records[0], position=11, is_sponsored=True))
    return records


def test_keyword_analysis_returns_tier1_immediately(service, keyword_records):
    result = service.analyze_keyword("garlic press", keyword_records, category="Kitchen")
    assert result["mode"] == "KEYWORD"
    assert result["tier2_status"] == "pending"
    assert len(result["tier1"]["products"]) == 10
    assert result["brand_moat"]["level"] == "HARD"
    assert service.get_analysis(result["snapshot_id"])["tier2"] is None


def test_refinement_is_stored_and_observed_once(service, keyword_records):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    payload = service.run_refinement(snapshot_id)

    assert payload["calibration_source"] == SOURCE_HEURISTIC
    assert payload["algorithm_boosts"] == [{"asin": "B0TEST0001", "appearances": 2}]
    analysis = service.get_analysis(snapshot_id)
    assert analysis["tier2_status"] == "complete"
    assert analysis["tier2"] == payload
    assert service.store.count_observations("US") == 1

    # a second run reuses the stored record
    assert service.run_refinement(snapshot_id) == payload
    assert service.store.count_observations("US") == 1
    observation = service.store.read_observations("US")[0]
    assert observation["snapshot_id"] == snapshot_id
    assert observation["normalized_keyword"] == "garlic press"
    assert set(observation["estimator_outputs"]) == {"revenue", "search_volume"}


def test_refinement_uses_rank_source(session_factory, keyword_records):
    source = MagicMock()
    source.fetch_rank.return_value = RankInfo(500, "Home & Kitchen")
    service = MarketAnalysisService(session_factory=session_factory, rank_source=source)
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    payload = service.run_refinement(snapshot_id)
    assert payload["rank_coverage"] == 1.0
    assert source.fetch_rank.call_count == 10


def test_failed_refinement_marks_snapshot(service, keyword_records, monkeypatch):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]

    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(analysis_service, "refine", explode)
    assert service.run_refinement(snapshot_id) is None
    assert service.get_analysis(snapshot_id)["tier2_status"] == "failed"
    assert service.store.count_observations("US") == 0

    # a failed snapshot can be retried
    monkeypatch.undo()
    assert service.run_refinement(snapshot_id) is not None
    assert service.get_analysis(snapshot_id)["tier2_status"] == "complete"
    assert service.store.count_observations("US") == 1


def test_pending_sweep(service, keyword_records):
    ids = [service.analyze_keyword(f"kw {i}", keyword_records)["snapshot_id"] for i in range(3)]
    assert service.run_pending_refinements() == 3
    assert all(service.get_analysis(i)["tier2_status"] == "complete" for i in ids)
    assert service.run_pending_refinements() == 0


def test_background_refinement(file_session_factory, keyword_records):
    service = MarketAnalysisService(
        session_factory=file_session_factory,
        executor=ThreadPoolExecutor(max_workers=1),
    )
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    service.shutdown(wait=True)
    assert service.get_analysis(snapshot_id)["tier2_status"] == "complete"


def test_keyword_margin_build_and_refine(service, keyword_records):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    margin = service.build_margin(snapshot_id, "dropshipping")
    assert margin["price_source"] == "page1_avg"
    assert margin["assumed_price"] == 25.0
    assert margin["confidence_tier"] == "ESTIMATED"

    refined = service.refine_margin(snapshot_id, {"cogs": 10, "fba_fee": 4})
    assert refined["confidence_tier"] == "EXACT"
    assert refined["net_margin_min_pct"] == 44.0
    assert service.get_analysis(snapshot_id)["margin"]["confidence_tier"] == "EXACT"

    with pytest.raises(CostOverrideError):
        service.refine_margin(snapshot_id, {"cogs": 30})
    assert service.get_analysis(snapshot_id)["margin"]["cogs_min"] == 10.0


def test_asin_analysis_uses_listing_price(service):
    result = service.analyze_asin("B0TEST0099", {"price": 40.0, "brand": "Solo", "reviews": 10})
    assert result["mode"] == "ASIN"
    assert result["brand_moat"] is None
    margin = service.build_margin(result["snapshot_id"], "private_label")
    assert margin["price_source"] == "asin_price"
    assert margin["assumed_price"] == 40.0


def test_unusable_input_raises(service):
    with pytest.raises(MarketAnalysisError):
        service.analyze_keyword("empty", [])
    with pytest.raises(MarketAnalysisError):
        service.analyze_keyword("no asins", [{"title": "x", "price": 5}])
    with pytest.raises(MarketAnalysisError):
        service.get_analysis(12345)


def test_refine_margin_requires_a_margin(service, keyword_records, session_factory):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    with pytest.raises(MarketAnalysisError):
        service.refine_margin(snapshot_id, {"cogs": 5})
    session = session_factory()
    try:
        assert session.get(AnalysisSnapshot, snapshot_id).margin_json is None
    finally:
        session.close()


def _set_snapshot(session_factory, snapshot_id, **values):
    session = session_factory()
    try:
        snapshot = session.get(AnalysisSnapshot, snapshot_id)
        for key, value in values.items():
            setattr(snapshot, key, value)
        session.commit()
    finally:
        session.close()


def test_overlapping_refinements_store_one_record(file_session_factory, keyword_records, monkeypatch):
    service = MarketAnalysisService(session_factory=file_session_factory)
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]

    real_refine = analysis_service.refine
    entered = threading.Event()
    release = threading.Event()

    def slow_refine(*args, **kwargs):
        entered.set()
        release.wait(5)
        return real_refine(*args, **kwargs)

    monkeypatch.setattr(analysis_service, "refine", slow_refine)
    results = {}
    worker = threading.Thread(target=lambda: results.setdefault("first", service.run_refinement(snapshot_id)))
    worker.start()
    try:
        assert entered.wait(5)
        assert service.get_analysis(snapshot_id)["tier2_status"] == "running"
        # the sweep skips it and a direct call does not start a second run
        assert service.run_pending_refinements() == 0
        assert service.run_refinement(snapshot_id) is None
    finally:
        release.set()
        worker.join(5)

    assert results["first"] is not None
    assert service.run_refinement(snapshot_id) == results["first"]
    assert service.get_analysis(snapshot_id)["tier2_status"] == "complete"
    assert service.store.count_observations("US") == 1


def test_record_stored_by_another_run_wins(service, keyword_records, session_factory, monkeypatch):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    real_refine = analysis_service.refine
    other = {"snapshot_id": snapshot_id, "source": "other run"}

    def refine_after_other_run(*args, **kwargs):
        result = real_refine(*args, **kwargs)
        session = session_factory()
        try:
            session.add(Tier2RefinementRecord(snapshot_id=snapshot_id, payload_json=json.dumps(other)))
            session.commit()
        finally:
            session.close()
        return result

    monkeypatch.setattr(analysis_service, "refine", refine_after_other_run)
    assert service.run_refinement(snapshot_id) == other
    assert service.get_analysis(snapshot_id)["tier2_status"] == "complete"
    assert service.store.count_observations("US") == 0


def test_unreadable_snapshot_is_marked_failed(service, keyword_records, session_factory):
    broken = service.analyze_keyword("broken", keyword_records)["snapshot_id"]
    healthy = service.analyze_keyword("healthy", keyword_records)["snapshot_id"]
    _set_snapshot(session_factory, broken, listings_json="not json")

    assert service.run_pending_refinements() == 1
    assert service.get_analysis(broken)["tier2_status"] == "failed"
    assert service.get_analysis(healthy)["tier2_status"] == "complete"


def test_requeue_interrupted(service, keyword_records, session_factory):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]
    _set_snapshot(session_factory, snapshot_id, tier2_status="running")
    assert service.run_pending_refinements() == 0

    assert service.requeue_interrupted() == 1
    assert service.get_analysis(snapshot_id)["tier2_status"] == "pending"
    assert service.run_pending_refinements() == 1


def test_background_errors_are_logged(service, keyword_records, monkeypatch, caplog):
    snapshot_id = service.analyze_keyword("garlic press", keyword_records)["snapshot_id"]

    def db_down(snapshot_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(service, "_claim", db_down)
    service.executor = ThreadPoolExecutor(max_workers=1)
    with caplog.at_level(logging.ERROR, logger=analysis_service.__name__):
        future = service.submit_refinement(snapshot_id)
        service.shutdown(wait=True)

    assert isinstance(future.exception(), RuntimeError)
    assert f"Background Tier-2 for snapshot {snapshot_id} raised" in caplog.text
