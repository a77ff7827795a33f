"""Margin Snapshot Builder -- mode-aware margin ranges with a confidence tier.

ASIN snapshots take their price from the single listing; KEYWORD snapshots
from the page-one average.  The two sources never mix.  Every value that
had to be substituted is explained in ``assumptions``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields

from market_estimator.services.cogs_assumptions import (
    CATEGORY_ELECTRONICS,
    SOURCING_UNKNOWN,
    estimate_cogs,
    infer_category_bucket,
    normalize_sourcing_model,
)
from market_estimator.services.fee_estimator import (
    FEE_SOURCE_USER_OVERRIDE,
    FeeInfo,
    estimate_fba_fee_range,
)
from market_estimator.services.utils import positive_or_none

logger = logging.getLogger(__name__)

MODE_ASIN = "ASIN"
MODE_KEYWORD = "KEYWORD"

TIER_ESTIMATED = "ESTIMATED"
TIER_REFINED = "REFINED"
TIER_EXACT = "EXACT"
TIER_ORDER = {TIER_ESTIMATED: 0, TIER_REFINED: 1, TIER_EXACT: 2}

PRICE_SOURCE_ASIN = "asin_price"
PRICE_SOURCE_PAGE1 = "page1_avg"
PRICE_SOURCE_OVERRIDE = "user_override"
PRICE_SOURCE_FALLBACK = "fallback"

COGS_SOURCE_ENGINE = "assumption_engine"
COGS_SOURCE_OVERRIDE = "user_override"
FEE_SOURCE_CATEGORY = "category_estimate"

FALLBACK_PRICE = 25.0
COGS_WIDENING_STEP = 0.10

_OVERRIDE_KEYS = ("price", "cogs", "fba_fee")


class CostOverrideError(ValueError):
    """Raised when user-supplied costs are impossible (e.g. COGS >= price)."""


@dataclass
class MarginSnapshot:
    mode: str
    assumed_price: float
    price_source: str
    cogs_min: float
    cogs_max: float
    cogs_source: str
    fba_fee: float
    fba_fee_source: str
    net_margin_min_pct: float
    net_margin_max_pct: float
    breakeven_price_min: float
    breakeven_price_max: float
    confidence_tier: str
    confidence_reason: str
    assumptions: list[str] = field(default_factory=list)
    # Inputs kept so the snapshot can be rebuilt on refinement
    sourcing_model: str = SOURCING_UNKNOWN
    category: str | None = None
    asin_price: float | None = None
    market_avg_price: float | None = None
    fee_info: FeeInfo | None = None
    user_overrides: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MarginSnapshot":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        fee = values.get("fee_info")
        if isinstance(fee, dict):
            values["fee_info"] = FeeInfo(**fee)
        return cls(**values)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _validate_overrides(overrides: dict | None) -> dict:
    """Keep recognised overrides, rejecting non-numeric or non-positive values."""
    clean: dict[str, float] = {}
    for key, value in (overrides or {}).items():
        if key not in _OVERRIDE_KEYS or value is None:
            continue
        if isinstance(value, bool):
            raise CostOverrideError(f"{key} override must be a number, got {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise CostOverrideError(f"{key} override must be a number, got {value!r}")
        if not math.isfinite(number) or number <= 0:
            raise CostOverrideError(f"{key} override must be greater than zero, got {value!r}")
        clean[key] = number
    return clean


def _resolve_price(mode: str, asin_price, market_avg_price, overrides: dict) -> tuple[float, str, str]:
    if "price" in overrides:
        return overrides["price"], PRICE_SOURCE_OVERRIDE, "Using user-provided price override"
    if mode == MODE_ASIN:
        price = positive_or_none(asin_price)
        if price is not None:
            return price, PRICE_SOURCE_ASIN, "Using ASIN listing price"
    else:
        price = positive_or_none(market_avg_price)
        if price is not None:
            return price, PRICE_SOURCE_PAGE1, "Using Page-1 average price"
    return (
        FALLBACK_PRICE,
        PRICE_SOURCE_FALLBACK,
        f"Price unavailable, using fallback ${FALLBACK_PRICE:.2f}; confidence capped at {TIER_ESTIMATED}",
    )


def _resolve_tier(cogs_exact: bool, fee_exact: bool, price_source: str) -> tuple[str, str]:
    if price_source == PRICE_SOURCE_FALLBACK:
        return TIER_ESTIMATED, "No price signal; fallback price used"
    if cogs_exact and fee_exact:
        return TIER_EXACT, "User-provided COGS and exact FBA fee"
    if cogs_exact:
        return TIER_REFINED, "User-provided COGS with estimated FBA fees"
    if fee_exact:
        return TIER_REFINED, "Exact FBA fee with estimated COGS"
    return TIER_ESTIMATED, "Estimated COGS and FBA fees based on sourcing model and category"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_margin_snapshot(
    mode: str,
    sourcing_model: str | None,
    *,
    asin_price: float | None = None,
    market_avg_price: float | None = None,
    category: str | None = None,
    fee_info: FeeInfo | None = None,
    user_overrides: dict | None = None,
) -> MarginSnapshot:
    """Assemble a margin snapshot.

    Parameters
    ----------
    mode : str
        ``"ASIN"`` reads only ``asin_price``; ``"KEYWORD"`` reads only
        ``market_avg_price``.
    sourcing_model : str | None
        Passed to the COGS assumption engine.
    fee_info : FeeInfo | None
        A fee figure and its source; only exact sources are used as-is.
    user_overrides : dict | None
        Optional ``price``, ``cogs`` and ``fba_fee``.

    Raises
    ------
    CostOverrideError
        When an override is not a positive number or COGS >= price.
    """
    mode = (mode or "").upper()
    if mode not in (MODE_ASIN, MODE_KEYWORD):
        raise ValueError(f"Unknown margin mode: {mode!r}")
    model = normalize_sourcing_model(sourcing_model)
    overrides = _validate_overrides(user_overrides)
    assumptions: list[str] = []

    # Price
    price, price_source, note = _resolve_price(mode, asin_price, market_avg_price, overrides)
    assumptions.append(note)

    # COGS
    if "cogs" in overrides:
        if overrides["cogs"] >= price:
            raise CostOverrideError(
                f"COGS ${overrides['cogs']:.2f} must be below the selling price ${price:.2f}"
            )
        cogs_min = cogs_max = overrides["cogs"]
        cogs_source = COGS_SOURCE_OVERRIDE
        assumptions.append(f"COGS: ${cogs_min:.2f} (user-provided)")
    else:
        estimate = estimate_cogs(price, category, model)
        cogs_min, cogs_max = estimate.low, estimate.high
        cogs_source = COGS_SOURCE_ENGINE
        assumptions.append(f"COGS: ${cogs_min:.2f}-${cogs_max:.2f} ({estimate.rationale})")

        reasons = []
        if model == SOURCING_UNKNOWN:
            reasons.append("sourcing model unknown")
        if infer_category_bucket(category) == CATEGORY_ELECTRONICS:
            reasons.append("electronics category")
        if reasons:
            widen_by = (cogs_max - cogs_min) * COGS_WIDENING_STEP * len(reasons)
            cogs_min = max(0.0, cogs_min - widen_by)
            cogs_max = min(price, cogs_max + widen_by)
            for reason in reasons:
                assumptions.append(f"Widened COGS range by {COGS_WIDENING_STEP:.0%} ({reason})")

    # Fee
    if "fba_fee" in overrides:
        fee, fee_source = overrides["fba_fee"], FEE_SOURCE_USER_OVERRIDE
        assumptions.append(f"FBA fees: ${fee:.2f} (user-provided)")
    elif fee_info is not None and fee_info.is_exact:
        fee, fee_source = float(fee_info.amount), fee_info.source
        assumptions.append(f"FBA fees: ${fee:.2f} ({fee_info.source})")
    else:
        fee_range = estimate_fba_fee_range(category)
        fee, fee_source = fee_range.midpoint, FEE_SOURCE_CATEGORY
        assumptions.append(f"FBA fees: ${fee:.2f} (estimated: {fee_range.label})")

    # Margins are floored at zero; breakeven keeps the full cost
    margin_min = max(0.0, (price - cogs_max - fee) / price * 100)
    margin_max = max(0.0, (price - cogs_min - fee) / price * 100)
    if price - cogs_max - fee < 0:
        assumptions.append("High-cost scenario is loss-making; margin shown as 0%")

    tier, reason = _resolve_tier(cogs_source == COGS_SOURCE_OVERRIDE, fee_source != FEE_SOURCE_CATEGORY, price_source)

    return MarginSnapshot(
        mode=mode,
        assumed_price=round(price, 2),
        price_source=price_source,
        cogs_min=round(cogs_min, 2),
        cogs_max=round(cogs_max, 2),
        cogs_source=cogs_source,
        fba_fee=round(fee, 2),
        fba_fee_source=fee_source,
        net_margin_min_pct=round(margin_min, 2),
        net_margin_max_pct=round(margin_max, 2),
        breakeven_price_min=round(cogs_min + fee, 2),
        breakeven_price_max=round(cogs_max + fee, 2),
        confidence_tier=tier,
        confidence_reason=reason,
        assumptions=assumptions,
        sourcing_model=model,
        category=category,
        asin_price=asin_price,
        market_avg_price=market_avg_price,
        fee_info=fee_info,
        user_overrides=overrides,
    )


def refine_margin_snapshot(
    snapshot: MarginSnapshot,
    overrides: dict | None = None,
    fee_info: FeeInfo | None = None,
) -> MarginSnapshot:
    """Rebuild ``snapshot`` in place with merged overrides and any new fee quote.

    Every derived field is recomputed.  Overrides accumulate, so the tier
    can only stay the same or improve.
    """
    merged = dict(snapshot.user_overrides or {})
    merged.update(_validate_overrides(overrides))

    # An estimated figure never replaces an exact quote already held
    fee = snapshot.fee_info
    if fee_info is not None and (fee_info.is_exact or fee is None or not fee.is_exact):
        fee = fee_info

    rebuilt = build_margin_snapshot(
        snapshot.mode,
        snapshot.sourcing_model,
        asin_price=snapshot.asin_price,
        market_avg_price=snapshot.market_avg_price,
        category=snapshot.category,
        fee_info=fee,
        user_overrides=merged,
    )
    logger.debug(
        "Refined %s margin snapshot: %s -> %s",
        snapshot.mode, snapshot.confidence_tier, rebuilt.confidence_tier,
    )
    for f in fields(MarginSnapshot):
        setattr(snapshot, f.name, getattr(rebuilt, f.name))
    return snapshot
