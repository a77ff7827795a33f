"""COGS assumption engine -- cost-of-goods ranges when exact costs are unknown.

Each sourcing model maps to a percent-of-price band.  Private label further
branches on a category bucket inferred from free text.
"""
from __future__ import annotations

from dataclasses import dataclass

from config import COGS_BANDS
from market_estimator.services.utils import is_finite_number

SOURCING_PRIVATE_LABEL = "private_label"
SOURCING_WHOLESALE = "wholesale_arbitrage"
SOURCING_RETAIL_ARBITRAGE = "retail_arbitrage"
SOURCING_DROPSHIPPING = "dropshipping"
SOURCING_UNKNOWN = "unknown"

SOURCING_MODELS = (
    SOURCING_PRIVATE_LABEL,
    SOURCING_WHOLESALE,
    SOURCING_RETAIL_ARBITRAGE,
    SOURCING_DROPSHIPPING,
    SOURCING_UNKNOWN,
)

_SOURCING_ALIASES = {
    "private-label": SOURCING_PRIVATE_LABEL,
    "private label": SOURCING_PRIVATE_LABEL,
    "pl": SOURCING_PRIVATE_LABEL,
    "wholesale": SOURCING_WHOLESALE,
    "wholesale/arbitrage": SOURCING_WHOLESALE,
    "wholesale-arbitrage": SOURCING_WHOLESALE,
    "retail-arbitrage": SOURCING_RETAIL_ARBITRAGE,
    "retail arbitrage": SOURCING_RETAIL_ARBITRAGE,
    "ra": SOURCING_RETAIL_ARBITRAGE,
    "dropship": SOURCING_DROPSHIPPING,
    "drop shipping": SOURCING_DROPSHIPPING,
    "not_sure": SOURCING_UNKNOWN,
    "not sure": SOURCING_UNKNOWN,
}

CATEGORY_ELECTRONICS = "electronics"
CATEGORY_HOME = "home"
CATEGORY_BEAUTY = "beauty"
CATEGORY_DEFAULT = "default"

# Checked in order; first keyword hit wins
_CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (CATEGORY_ELECTRONICS, ("electronic", "tech", "computer", "phone", "tablet", "audio", "camera")),
    (CATEGORY_HOME, ("home", "kitchen", "household", "cookware", "appliance", "decor")),
    (CATEGORY_BEAUTY, ("beauty", "cosmetic", "skincare", "makeup", "hair", "perfume", "nail")),
]


@dataclass(frozen=True)
class CogsEstimate:
    low: float
    high: float
    percent_range: tuple[float, float]
    confidence: str
    rationale: str
    sourcing_model: str
    category_bucket: str


def normalize_sourcing_model(value) -> str:
    """Map free-form sourcing labels onto the fixed enumeration."""
    if not value or not isinstance(value, str):
        return SOURCING_UNKNOWN
    token = value.strip().lower()
    if token in SOURCING_MODELS:
        return token
    return _SOURCING_ALIASES.get(token, SOURCING_UNKNOWN)


def infer_category_bucket(category: str | None) -> str:
    """Case-insensitive substring match of a category label against keyword lists."""
    if not category:
        return CATEGORY_DEFAULT
    text = category.strip().lower()
    for bucket, keywords in _CATEGORY_KEYWORDS:
        if any(kw in text for kw in keywords):
            return bucket
    return CATEGORY_DEFAULT


def cogs_percent_band(
    sourcing_model: str | None,
    category: str | None = None,
    bands: dict | None = None,
) -> tuple[str, str, tuple[float, float]]:
    """Return ``(sourcing_model, bucket, (low_pct, high_pct))``."""
    table = bands if bands is not None else COGS_BANDS
    model = normalize_sourcing_model(sourcing_model)
    if model not in table:
        model = SOURCING_UNKNOWN
    by_category = table[model]
    bucket = infer_category_bucket(category) if model == SOURCING_PRIVATE_LABEL else CATEGORY_DEFAULT
    if bucket not in by_category:
        bucket = CATEGORY_DEFAULT
    return model, bucket, by_category[bucket]


def estimate_cogs(
    price,
    category: str | None = None,
    sourcing_model: str | None = None,
    bands: dict | None = None,
) -> CogsEstimate | None:
    """Estimate a COGS dollar range for one selling price.

    Parameters
    ----------
    price : float
        Selling price.  Missing, zero or non-finite prices yield None.
    category : str | None
        Free-text category; only private label uses it.
    sourcing_model : str | None
        One of ``SOURCING_MODELS`` (aliases accepted, anything else is unknown).

    Returns
    -------
    CogsEstimate with ``0 <= low <= high <= price``, or None.
    """
    if not is_finite_number(price) or price <= 0:
        return None

    model, bucket, (pct_low, pct_high) = cogs_percent_band(sourcing_model, category, bands)
    confidence = "low" if model == SOURCING_UNKNOWN else "medium"

    low = max(0.0, price * pct_low / 100)
    high = min(float(price), price * pct_high / 100)
    low = min(low, high)

    if model == SOURCING_UNKNOWN:
        rationale = (
            f"Sourcing model unknown: using a wide {pct_low:g}-{pct_high:g}% of price band"
        )
    elif model == SOURCING_PRIVATE_LABEL:
        rationale = f"Private label ({bucket} category): {pct_low:g}-{pct_high:g}% of price"
    else:
        rationale = f"{model.replace('_', ' ').capitalize()}: {pct_low:g}-{pct_high:g}% of price"

    return CogsEstimate(
        low=low,
        high=high,
        percent_range=(pct_low, pct_high),
        confidence=confidence,
        rationale=rationale,
        sourcing_model=model,
        category_bucket=bucket,
    )
