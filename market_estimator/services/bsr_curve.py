"""BSR-to-units curve -- estimate monthly unit sales from a best-seller rank.

Each category has a power-law curve ``units = A * rank ** -B``.  The raw
value is lightly smoothed towards a 2,000-unit ceiling and clamped to a
fixed band so extreme ranks cannot produce absurd estimates.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

from config import CATEGORY_CURVES
from market_estimator.services.utils import is_finite_number

MIN_UNITS = 5
MAX_UNITS = 100_000

_SMOOTHING_KEEP = 0.92
_SMOOTHING_BLEND = 0.08
_SMOOTHING_CAP = 2000.0

# BSR reflects sales from all traffic, not just this keyword
MARKET_DAMPENING = 0.65

DEFAULT_CURVE_KEY = "default"


@dataclass(frozen=True)
class UnitsEstimate:
    units: int
    raw_units: float
    clamped: bool
    curve_key: str


def resolve_curve(category_key: str | None, curves: dict | None = None) -> tuple[str, tuple[float, float]]:
    """Return ``(key, (A, B))`` for a category, falling back to the default curve."""
    table = curves if curves is not None else CATEGORY_CURVES
    key = (category_key or "").strip().lower()
    if key in table:
        return key, table[key]
    return DEFAULT_CURVE_KEY, table[DEFAULT_CURVE_KEY]


def estimate_units(
    rank_in_category,
    category_key: str | None = DEFAULT_CURVE_KEY,
    curves: dict | None = None,
) -> UnitsEstimate | None:
    """Estimate monthly units for one rank.

    Returns None for ranks that cannot be used (missing, zero or negative,
    NaN or infinite) so callers can tell "unusable" apart from "few sales".
    """
    if not is_finite_number(rank_in_category) or rank_in_category <= 0:
        return None

    key, (a, b) = resolve_curve(category_key, curves)
    raw = a * math.pow(rank_in_category, -b)
    smoothed = raw * _SMOOTHING_KEEP + min(raw, _SMOOTHING_CAP) * _SMOOTHING_BLEND

    # clamp on the unrounded value so 4.6 counts as clamped to the floor
    clamped = smoothed < MIN_UNITS or smoothed > MAX_UNITS
    units = int(round(min(max(smoothed, MIN_UNITS), MAX_UNITS)))

    return UnitsEstimate(units=units, raw_units=raw, clamped=clamped, curve_key=key)


def estimate_market_units(rank_units: list[int], listing_count: int) -> float | None:
    """Scale per-listing BSR units up to a dampened page-one total.

    ``rank_units`` holds the estimates for the listings that had a rank;
    the sum is extrapolated to ``listing_count`` listings.
    """
    if not rank_units or listing_count <= 0:
        return None
    coverage_scale = listing_count / len(rank_units)
    return sum(rank_units) * coverage_scale * MARKET_DAMPENING
