from datetime import datetime, timedelta

import pytest

from market_estimator.models.database import ImmutableRecordError
from market_estimator.models.estimator_model import ActiveEstimatorModel, EstimatorModelVersion
from market_estimator.models.market_observation import MarketObservation
from market_estimator.services.estimator_store import EstimatorStore, version_for_date


def test_version_names():
    day = datetime(2026, 10, 16, 3, 0)
    assert version_for_date(day) == "v2.0.20261016"
    assert version_for_date(day, {"v2.0.20261016"}) == "v2.0.20261016.2"
    assert version_for_date(day, {"v2.0.20261016", "v2.0.20261016.2"}) == "v2.0.20261016.3"


def test_activation_moves_a_single_pointer(session_factory):
    store = EstimatorStore(session_factory)
    day = datetime(2026, 10, 16, 3, 0)
    first = store.activate_model("US", "revenue", {"intercept": 0.1}, 200, trained_at=day)
    second = store.activate_model(
        "US", "revenue", {"intercept": 0.2}, 250,
        diagnostics={"r_squared": 0.4, "mae": 12.0}, trained_at=day + timedelta(hours=1),
    )
    assert first["model_version"] == "v2.0.20261016"
    assert second["model_version"] == "v2.0.20261016.2"

    active = store.get_active_model("US", "revenue")
    assert active["model_version"] == second["model_version"]
    assert active["coefficients"] == {"intercept": 0.2}
    assert active["diagnostics"] == {"r_squared": 0.4, "mae": 12.0}
    assert store.get_active_model("US", "search_volume") is None
    assert store.get_active_model("UK", "revenue") is None

    session = session_factory()
    try:
        assert session.query(ActiveEstimatorModel).count() == 1
        assert session.query(EstimatorModelVersion).count() == 2
    finally:
        session.close()
    assert [v["model_version"] for v in store.list_versions("US", "revenue")] == [
        "v2.0.20261016.2", "v2.0.20261016",
    ]


def test_model_versions_are_immutable(session_factory):
    store = EstimatorStore(session_factory)
    store.activate_model("US", "revenue", {"intercept": 0.1}, 200)
    session = session_factory()
    try:
        version = session.query(EstimatorModelVersion).first()
        version.training_rows = 1
        with pytest.raises(ImmutableRecordError):
            session.commit()
        session.rollback()
    finally:
        session.close()


def test_observations_are_append_only(session_factory):
    store = EstimatorStore(session_factory)
    obs_id = store.append_observation("US", keyword="Garlic  Press", estimator_inputs={"page1_count": 10})
    assert obs_id is not None

    session = session_factory()
    try:
        row = session.get(MarketObservation, obs_id)
        assert row.normalized_keyword == "garlic press"
        row.keyword = "changed"
        with pytest.raises(ImmutableRecordError):
            session.commit()
        session.rollback()
    finally:
        session.close()


def test_count_and_read_observations(session_factory):
    store = EstimatorStore(session_factory)
    base = datetime(2026, 1, 1)
    for i in range(5):
        store.append_observation("US", keyword=f"kw {i}", created_at=base + timedelta(days=i))
    store.append_observation("UK", keyword="other")

    assert store.count_observations("US") == 5
    assert store.count_observations("US", since=base + timedelta(days=2)) == 2
    rows = store.read_observations("US", limit=3)
    assert [r["keyword"] for r in rows] == ["kw 4", "kw 3", "kw 2"]
