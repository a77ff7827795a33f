"""FBA fee estimates for margin snapshots.

Used when no live fee quote is available.  Ranges are per fulfillment
size class, picked from the product's category label; the margin builder
takes the midpoint.
"""
from __future__ import annotations

from dataclasses import dataclass

from market_estimator.services.utils import is_finite_number

# Fee version identifier -- update whenever fee tables are refreshed
FEE_VERSION = "2026-Q1"

FEE_SOURCE_SP_API = "sp_api"
FEE_SOURCE_USER_OVERRIDE = "user_override"
FEE_SOURCE_ESTIMATED = "estimated"

EXACT_FEE_SOURCES = {FEE_SOURCE_SP_API, FEE_SOURCE_USER_OVERRIDE}


def get_fee_version() -> str:
    """Return the version string of the current fee ranges."""
    return FEE_VERSION


# ---------------------------------------------------------------------------
# Category fee ranges (USD per unit, fulfillment + referral)
# ---------------------------------------------------------------------------

_SMALL_KEYWORDS = ("small", "lightweight", "accessory", "jewelry", "phone case")
_OVERSIZE_KEYWORDS = ("oversized", "large", "furniture", "appliance", "mattress")

_FEE_RANGES: dict[str, tuple[float, float, str]] = {
    "small": (6.0, 9.0, "small standard-size"),
    "standard": (8.0, 12.0, "standard-size"),
    "oversize": (12.0, 18.0, "oversize"),
}


@dataclass(frozen=True)
class FeeRange:
    low: float
    high: float
    size_class: str
    label: str

    @property
    def midpoint(self) -> float:
        return (self.low + self.high) / 2


@dataclass(frozen=True)
class FeeInfo:
    """A fee figure and where it came from."""
    amount: float
    source: str = FEE_SOURCE_ESTIMATED

    @property
    def is_exact(self) -> bool:
        return self.source in EXACT_FEE_SOURCES and is_finite_number(self.amount) and self.amount > 0


def _size_class(category: str | None) -> str:
    if not category:
        return "standard"
    text = category.strip().lower()
    if any(kw in text for kw in _SMALL_KEYWORDS):
        return "small"
    if any(kw in text for kw in _OVERSIZE_KEYWORDS):
        return "oversize"
    return "standard"


def estimate_fba_fee_range(category: str | None) -> FeeRange:
    """Return the category-level FBA fee range for a category label."""
    size_class = _size_class(category)
    low, high, label = _FEE_RANGES[size_class]
    return FeeRange(low=low, high=high, size_class=size_class, label=label)
