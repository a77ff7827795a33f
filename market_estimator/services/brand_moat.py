"""Brand Moat Classifier -- how strongly one brand controls page one."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from market_estimator.services.utils import median

MOAT_NONE = "NONE"
MOAT_SOFT = "SOFT"
MOAT_HARD = "HARD"

_BRANDLESS_TOKENS = {"unknown", "generic", "unbranded", "n/a", "-", "none"}

_HARD_SHARE_PCT = 60.0
_SOFT_SHARE_PCT = 40.0
_SLOT_CONTROL_SLOTS = 3
_WIDE_SLOTS = 5
_WIDE_TOP10_SLOTS = 3
_REVIEW_LEAD_SLOTS = 2
_REVIEW_LEAD_RATIO = 2.0
_LADDER_MIN_LISTINGS = 3
_LADDER_RATIO = 3.0
_PRICE_PREMIUM_RATIO = 1.15
_PRICE_TOP10_SLOTS = 2
_TOP10_POSITION = 10


@dataclass
class BrandMoatVerdict:
    level: str = MOAT_NONE
    dominant_brand: str | None = None
    signals: dict[str, bool] = field(default_factory=lambda: {
        "revenue_concentration": False,
        "slot_control": False,
        "review_ladder": False,
        "price_immunity": False,
    })
    revenue_share_pct: float = 0.0
    page_one_slots: int = 0
    top_10_slots: int = 0
    brand_median_reviews: float | None = None
    page_median_reviews: float | None = None
    brand_median_price: float | None = None
    page_median_price: float | None = None
    brand_breakdown: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _get(item, name: str, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def normalize_brand(brand) -> str | None:
    """Stripped brand name, or None when the listing is effectively brandless."""
    if brand is None:
        return None
    text = str(brand).strip()
    if not text or text.lower() in _BRANDLESS_TOKENS:
        return None
    return text


def _revenue(item) -> float:
    value = _get(item, "estimated_monthly_revenue")
    if value is None:
        value = _get(item, "revenue")
    try:
        return max(0.0, float(value or 0.0))
    except (TypeError, ValueError):
        return 0.0


def _number(item, name: str) -> float | None:
    value = _get(item, name)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def classify(listings: list) -> BrandMoatVerdict:
    """Classify page-one brand structure as NONE, SOFT or HARD.

    Accepts Tier-1 products or dicts carrying ``brand``,
    ``estimated_monthly_revenue`` (or ``revenue``), ``review_count``,
    ``price`` and ``page_position``.  Pure: the same listings always give
    the same verdict.
    """
    if not listings:
        return BrandMoatVerdict()

    entries = []
    for index, item in enumerate(listings, start=1):
        position = _number(item, "page_position") or index
        entries.append({
            "brand": normalize_brand(_get(item, "brand")),
            "revenue": _revenue(item),
            "reviews": _number(item, "review_count"),
            "price": _number(item, "price"),
            "top10": position <= _TOP10_POSITION,
        })

    page_reviews = [e["reviews"] for e in entries if e["reviews"] is not None]
    page_prices = [e["price"] for e in entries if e["price"] is not None and e["price"] > 0]
    page_median_reviews = median(page_reviews) if page_reviews else None
    page_median_price = median(page_prices) if page_prices else None
    total_revenue = sum(e["revenue"] for e in entries)

    brands: dict[str, dict] = {}
    for e in entries:
        if e["brand"] is None:
            continue
        stats = brands.setdefault(e["brand"], {"revenue": 0.0, "slots": 0, "top10": 0, "reviews": [], "prices": []})
        stats["revenue"] += e["revenue"]
        stats["slots"] += 1
        stats["top10"] += 1 if e["top10"] else 0
        if e["reviews"] is not None:
            stats["reviews"].append(e["reviews"])
        if e["price"] is not None and e["price"] > 0:
            stats["prices"].append(e["price"])

    if not brands:
        return BrandMoatVerdict(
            page_median_reviews=page_median_reviews,
            page_median_price=page_median_price,
        )

    ranked = sorted(brands.items(), key=lambda kv: (-kv[1]["revenue"], -kv[1]["slots"], kv[0]))
    dominant, stats = ranked[0]

    share = stats["revenue"] / total_revenue * 100 if total_revenue > 0 else 0.0
    slots = stats["slots"]
    top10 = stats["top10"]
    brand_median_reviews = median(stats["reviews"]) if stats["reviews"] else None
    brand_median_price = median(stats["prices"]) if stats["prices"] else None

    review_lead = (
        slots >= _REVIEW_LEAD_SLOTS
        and brand_median_reviews is not None
        and page_median_reviews is not None
        and page_median_reviews > 0
        and brand_median_reviews >= _REVIEW_LEAD_RATIO * page_median_reviews
    )
    review_ladder = (
        len(stats["reviews"]) >= _LADDER_MIN_LISTINGS
        and brand_median_reviews is not None
        and brand_median_reviews > 0
        and max(stats["reviews"]) >= _LADDER_RATIO * brand_median_reviews
    )
    price_immunity = (
        brand_median_price is not None
        and page_median_price is not None
        and brand_median_price >= _PRICE_PREMIUM_RATIO * page_median_price
        and top10 >= _PRICE_TOP10_SLOTS
    )

    if (
        share >= _HARD_SHARE_PCT
        or (slots >= _SLOT_CONTROL_SLOTS and share >= _SOFT_SHARE_PCT)
        or (slots >= _WIDE_SLOTS and top10 >= _WIDE_TOP10_SLOTS)
    ):
        level = MOAT_HARD
    elif share >= _SOFT_SHARE_PCT or review_lead or review_ladder:
        level = MOAT_SOFT
    else:
        level = MOAT_NONE

    breakdown = [
        {
            "brand": name,
            "revenue_share_pct": round(s["revenue"] / total_revenue * 100, 2) if total_revenue > 0 else 0.0,
            "page_one_slots": s["slots"],
            "top_10_slots": s["top10"],
        }
        for name, s in ranked
    ]

    return BrandMoatVerdict(
        level=level,
        dominant_brand=dominant,
        signals={
            "revenue_concentration": share >= _SOFT_SHARE_PCT,
            "slot_control": slots >= _SLOT_CONTROL_SLOTS,
            "review_ladder": review_ladder,
            "price_immunity": price_immunity,
        },
        revenue_share_pct=round(share, 2),
        page_one_slots=slots,
        top_10_slots=top10,
        brand_median_reviews=brand_median_reviews,
        page_median_reviews=page_median_reviews,
        brand_median_price=brand_median_price,
        page_median_price=page_median_price,
        brand_breakdown=breakdown,
    )
