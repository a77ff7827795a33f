"""Self-calibrating estimator -- learned linear correction over the heuristic baselines.

Read path: compute the heuristic baseline, then (when an active model
exists for the marketplace and model type) scale it by ``1 + delta`` where
delta is a linear function of page-one features.

Training path: periodically fit a new correction from recent market
observations with a fixed, reproducible gradient-descent schedule and
swap it in as the active version.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime

import numpy as np
from sklearn.metrics import mean_absolute_error, r2_score

from config import (
    CALIBRATION_FACTOR_BOUNDS,
    HIGH_CONFIDENCE_ROWS,
    RETRAIN_MIN_ROWS,
    RETRAIN_WINDOW_ROWS,
)
from market_estimator.models.database import utcnow
from market_estimator.services.estimator_store import EstimatorStore
from market_estimator.services.market_heuristics import (
    EstimatorInputs,
    revenue_baseline,
    search_volume_baseline,
)

logger = logging.getLogger(__name__)

MODEL_TYPE_SEARCH_VOLUME = "search_volume"
MODEL_TYPE_REVENUE = "revenue"
MODEL_TYPES = (MODEL_TYPE_SEARCH_VOLUME, MODEL_TYPE_REVENUE)

SOURCE_HEURISTIC = "heuristic_v1"
SOURCE_CALIBRATED = "calibrated_v2"

# Output bands around the blended centre
SEARCH_VOLUME_BAND = (0.7, 1.3)
REVENUE_BAND = (0.8, 1.2)
_BANDS = {MODEL_TYPE_SEARCH_VOLUME: SEARCH_VOLUME_BAND, MODEL_TYPE_REVENUE: REVENUE_BAND}

FEATURE_NAMES = ["page1_count", "avg_reviews_log", "sponsored_pct", "avg_price"]

LEARNING_RATE = 0.01
ITERATIONS = 100
MIN_CATEGORY_ROWS = 20
CATEGORY_MULTIPLIER_BOUNDS = (0.8, 1.2)


@dataclass(frozen=True)
class CalibratedEstimate:
    model_type: str
    low: float
    high: float
    center: float
    baseline: float
    source: str
    confidence: str
    model_version: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def confidence_for_rows(training_rows: int) -> str:
    if training_rows >= HIGH_CONFIDENCE_ROWS:
        return "high"
    if training_rows >= RETRAIN_MIN_ROWS:
        return "medium"
    return "low"


def baseline_for(model_type: str, inputs: EstimatorInputs) -> tuple[float, str]:
    """Return ``(baseline_value, baseline_confidence)`` for a model type."""
    if model_type == MODEL_TYPE_SEARCH_VOLUME:
        result = search_volume_baseline(inputs)
    elif model_type == MODEL_TYPE_REVENUE:
        result = revenue_baseline(inputs)
    else:
        raise ValueError(f"Unknown model type: {model_type!r}")
    return float(result["estimate"]), result["confidence"]


def _category_key(category: str | None) -> str | None:
    return category.strip().lower() if category else None


def correction_factor(coefficients: dict, features: dict[str, float], category: str | None = None) -> float:
    """``(1 + delta)`` clamped to the configured bounds, times any category multiplier."""
    delta = coefficients.get("intercept", 0.0) + sum(
        coefficients.get(f"{name}_coef", 0.0) * features[name] for name in FEATURE_NAMES
    )
    lo, hi = CALIBRATION_FACTOR_BOUNDS
    factor = min(max(1.0 + delta, lo), hi)
    multipliers = coefficients.get("category_multipliers") or {}
    key = _category_key(category)
    if key and key in multipliers:
        factor *= multipliers[key]
    return factor


def calibrate(inputs: EstimatorInputs, model_type: str, model: dict | None) -> CalibratedEstimate:
    """Blend the heuristic baseline with a model (pure; ``model`` may be None)."""
    baseline, baseline_confidence = baseline_for(model_type, inputs)
    band_low, band_high = _BANDS[model_type]

    if not model:
        return CalibratedEstimate(
            model_type=model_type,
            low=round(baseline * band_low, 2),
            high=round(baseline * band_high, 2),
            center=round(baseline, 2),
            baseline=round(baseline, 2),
            source=SOURCE_HEURISTIC,
            confidence=baseline_confidence,
            model_version=None,
        )

    center = baseline * correction_factor(model["coefficients"], inputs.features(), inputs.category)
    return CalibratedEstimate(
        model_type=model_type,
        low=round(center * band_low, 2),
        high=round(center * band_high, 2),
        center=round(center, 2),
        baseline=round(baseline, 2),
        source=SOURCE_CALIBRATED,
        confidence=confidence_for_rows(model.get("training_rows", 0)),
        model_version=model.get("model_version"),
    )


# ---------------------------------------------------------------------------
# Training helpers
# ---------------------------------------------------------------------------

def _observation_target(observation: dict, model_type: str) -> float | None:
    """Reference value for one observation: benchmark first, else recorded output midpoint."""
    reference = observation.get("reference") or {}
    value = reference.get(model_type)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)

    output = (observation.get("estimator_outputs") or {}).get(model_type) or {}
    low, high = output.get("low"), output.get("high")
    if isinstance(low, (int, float)) and isinstance(high, (int, float)) and high > 0:
        return (float(low) + float(high)) / 2
    return None


def build_training_rows(observations: list[dict], model_type: str) -> list[dict]:
    """Turn observations into ``{features, baseline, target, category}`` rows."""
    rows: list[dict] = []
    for obs in observations:
        target = _observation_target(obs, model_type)
        if target is None or not math.isfinite(target):
            continue
        inputs = EstimatorInputs.from_dict(obs.get("estimator_inputs"))
        try:
            baseline, _ = baseline_for(model_type, inputs)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(baseline) or baseline <= 0:
            continue
        features = inputs.features()
        rows.append({
            "features": [features[name] for name in FEATURE_NAMES],
            "baseline": baseline,
            "target": target,
            "category": _category_key(inputs.category or obs.get("category")),
        })
    return rows


def fit_coefficients(
    X: np.ndarray,
    y: np.ndarray,
    learning_rate: float = LEARNING_RATE,
    iterations: int = ITERATIONS,
) -> dict:
    """Per-sample gradient descent on standardised features.

    Same inputs always give the same coefficients: zero initialisation,
    fixed sample order, fixed schedule.  The standardisation is folded back
    so the returned coefficients apply to raw feature values.
    """
    n, k = X.shape
    mu = X.mean(axis=0)
    sigma = X.std(axis=0)
    sigma[sigma == 0] = 1.0
    Z = (X - mu) / sigma

    weights = np.zeros(k)
    intercept = 0.0
    for _ in range(iterations):
        for i in range(n):
            error = intercept + float(Z[i] @ weights) - y[i]
            intercept -= learning_rate * error / n
            weights -= learning_rate * error * Z[i] / n

    raw_weights = weights / sigma
    coefficients = {"intercept": float(intercept - np.sum(raw_weights * mu))}
    for name, value in zip(FEATURE_NAMES, raw_weights):
        coefficients[f"{name}_coef"] = float(value)
    return coefficients


def _category_multipliers(rows: list[dict], coefficients: dict) -> dict[str, float]:
    """Residual multiplier per category with enough rows, clamped."""
    by_category: dict[str, list[float]] = {}
    for row in rows:
        if not row["category"]:
            continue
        features = dict(zip(FEATURE_NAMES, row["features"]))
        predicted = row["baseline"] * correction_factor(coefficients, features)
        if predicted > 0:
            by_category.setdefault(row["category"], []).append(row["target"] / predicted)

    lo, hi = CATEGORY_MULTIPLIER_BOUNDS
    return {
        category: round(min(max(float(np.mean(ratios)), lo), hi), 4)
        for category, ratios in sorted(by_category.items())
        if len(ratios) >= MIN_CATEGORY_ROWS
    }


def _all_finite(coefficients: dict) -> bool:
    values = [v for k, v in coefficients.items() if k != "category_multipliers"]
    values.extend((coefficients.get("category_multipliers") or {}).values())
    return all(math.isfinite(v) for v in values)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class CalibratedEstimator:
    """Read and training paths over an ``EstimatorStore``."""

    def __init__(
        self,
        store: EstimatorStore | None = None,
        min_rows: int = RETRAIN_MIN_ROWS,
        window_rows: int = RETRAIN_WINDOW_ROWS,
    ):
        self.store = store or EstimatorStore()
        self.min_rows = min_rows
        self.window_rows = window_rows

    def estimate(
        self,
        inputs: EstimatorInputs,
        marketplace: str,
        model_type: str = MODEL_TYPE_REVENUE,
    ) -> CalibratedEstimate:
        """Baseline, corrected by the active model when there is one."""
        try:
            model = self.store.get_active_model(marketplace, model_type)
        except Exception:
            logger.exception("Could not load active %s model for %s", model_type, marketplace)
            model = None
        return calibrate(inputs, model_type, model)

    def estimate_all(self, inputs: EstimatorInputs, marketplace: str) -> dict[str, CalibratedEstimate]:
        return {mt: self.estimate(inputs, marketplace, mt) for mt in MODEL_TYPES}

    def retrain(self, marketplace: str, now: datetime | None = None) -> dict:
        """Retrain every model type whose observation gate is met.

        Returns a dict keyed by model type with a status dict for each
        (``ok``, ``insufficient_data``, ``diverged`` or ``error``).
        """
        results = {}
        for model_type in MODEL_TYPES:
            try:
                results[model_type] = self._retrain_model_type(marketplace, model_type, now)
            except Exception as exc:
                logger.exception("Retraining %s model for %s failed", model_type, marketplace)
                results[model_type] = {"status": "error", "message": str(exc)}
        return results

    def _retrain_model_type(self, marketplace: str, model_type: str, now: datetime | None) -> dict:
        active = self.store.get_active_model(marketplace, model_type)
        since = active["trained_at"] if active else None
        new_rows = self.store.count_observations(marketplace, since=since)
        if new_rows < self.min_rows:
            logger.info(
                "Skipping %s retrain for %s: %d new observations (need %d)",
                model_type, marketplace, new_rows, self.min_rows,
            )
            return {"status": "insufficient_data", "new_observations": new_rows}

        observations = self.store.read_observations(marketplace, limit=self.window_rows)
        rows = build_training_rows(observations, model_type)
        if len(rows) < self.min_rows:
            logger.info(
                "Skipping %s retrain for %s: %d usable rows (need %d)",
                model_type, marketplace, len(rows), self.min_rows,
            )
            return {"status": "insufficient_data", "usable_rows": len(rows)}

        # Oldest first so the descent order is stable for a given window
        rows.reverse()
        X = np.array([r["features"] for r in rows], dtype=float)
        baselines = np.array([r["baseline"] for r in rows], dtype=float)
        targets = np.array([r["target"] for r in rows], dtype=float)
        lo, hi = CALIBRATION_FACTOR_BOUNDS
        y = np.clip(targets / baselines - 1.0, lo - 1.0, hi - 1.0)

        coefficients = fit_coefficients(X, y)
        coefficients["category_multipliers"] = _category_multipliers(rows, coefficients)
        if not _all_finite(coefficients):
            logger.warning("Discarding %s model for %s: non-finite coefficients", model_type, marketplace)
            return {"status": "diverged", "usable_rows": len(rows)}

        predicted = np.array([
            r["baseline"] * correction_factor(coefficients, dict(zip(FEATURE_NAMES, r["features"])), r["category"])
            for r in rows
        ])
        r2 = float(r2_score(targets, predicted))
        mae = float(mean_absolute_error(targets, predicted))

        version = self.store.activate_model(
            marketplace,
            model_type,
            coefficients,
            training_rows=len(rows),
            diagnostics={"r_squared": r2, "mae": mae},
            trained_at=now or utcnow(),
        )
        logger.info(
            "Calibrated %s model trained for %s: R²=%.3f, MAE=%.1f, n=%d",
            model_type, marketplace, r2, mae, len(rows),
        )
        return {
            "status": "ok",
            "model_version": version["model_version"],
            "training_rows": len(rows),
            "r_squared": round(r2, 3),
            "mae": round(mae, 1),
        }
