import math

import pytest

from market_estimator.services.bsr_curve import (
    MARKET_DAMPENING,
    MAX_UNITS,
    MIN_UNITS,
    estimate_market_units,
    estimate_units,
    resolve_curve,
)


def test_rank_one_default_curve():
    est = estimate_units(1)
    # 41800 * 0.92 + min(41800, 2000) * 0.08
    assert est.units == 38616
    assert est.curve_key == "default"
    assert not est.clamped


def test_units_never_increase_with_rank():
    ranks = [1, 2, 5, 10, 50, 100, 500, 1_000, 10_000, 100_000, 1_000_000]
    units = [estimate_units(r, "toys & games").units for r in ranks]
    assert units == sorted(units, reverse=True)


def test_very_deep_rank_clamps_to_minimum():
    est = estimate_units(100_000_000)
    assert est.units == MIN_UNITS
    assert est.clamped


def test_rank_one_million_hits_the_floor():
    est = estimate_units(1_000_000, "default")
    assert est.raw_units < MIN_UNITS
    assert est.units == MIN_UNITS
    assert est.clamped


def test_value_just_above_floor_is_not_clamped():
    # smoothed 5.4 rounds to 5 but never went below the floor
    est = estimate_units(1, curves={"default": (5.4, 0.0)})
    assert est.units == MIN_UNITS
    assert not est.clamped


def test_huge_curve_clamps_to_maximum():
    est = estimate_units(1, "mega", curves={"default": (1e9, 0.5)})
    assert est.units == MAX_UNITS
    assert est.clamped


@pytest.mark.parametrize("rank", [None, 0, -3, math.nan, math.inf, "12", True])
def test_unusable_ranks_return_none(rank):
    assert estimate_units(rank) is None


def test_category_lookup_is_case_insensitive_with_default_fallback():
    assert resolve_curve("Toys & Games")[0] == "toys & games"
    assert resolve_curve("Garden Gnomes")[0] == "default"
    assert resolve_curve(None)[0] == "default"


def test_market_units_extrapolates_and_dampens():
    # two ranked listings out of four
    total = estimate_market_units([100, 300], 4)
    assert total == pytest.approx(400 * 2 * MARKET_DAMPENING)
    assert estimate_market_units([], 10) is None
