"""Page-one listing records -- raw record parsing, ASIN validation, de-duplication."""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

from market_estimator.services.utils import is_finite_number, parse_count

logger = logging.getLogger(__name__)

ASIN_PATTERN = re.compile(r"^[A-Z0-9]{10}$")

FULFILLMENT_FBA = "FBA"
FULFILLMENT_FBM = "FBM"
FULFILLMENT_AMAZON = "AMAZON"
FULFILLMENT_UNKNOWN = "UNKNOWN"

_FBA_TOKENS = ("fba", "afn", "fulfilled by amazon", "amazon fulfilled", "amazon_fulfilled")
_FBM_TOKENS = ("fbm", "mfn", "merchant", "fulfilled by merchant", "seller fulfilled")
_AMAZON_RETAIL_TOKENS = {"amazon", "amazon retail", "amazon_retail", "1p", "retail"}
_AMAZON_SELLER_RE = re.compile(r"^amazon(\.[a-z.]+)?$")


@dataclass
class Listing:
    """One page-one product entry after normalisation."""
    asin: str
    price: float | None = None
    rating: float | None = None
    review_count: int | None = None
    is_sponsored: bool = False
    page_position: int | None = None
    organic_rank: int | None = None
    brand: str | None = None
    fulfillment: str = FULFILLMENT_UNKNOWN
    rank_in_category: int | None = None
    category: str | None = None
    title: str | None = None
    seller: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Listing":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PageOne:
    """Canonical listings plus the raw ASIN sequence they were collapsed from."""
    listings: list[Listing] = field(default_factory=list)
    appearance_asins: list[str] = field(default_factory=list)


def normalize_asin(value) -> str:
    """Trim and upper-case an ASIN-like value ("" when missing)."""
    if value is None:
        return ""
    return str(value).strip().upper()


def is_valid_asin(value) -> bool:
    return bool(ASIN_PATTERN.match(normalize_asin(value)))


# ---------------------------------------------------------------------------
# Raw record parsing
# ---------------------------------------------------------------------------

def _price_from_string(raw: str) -> Optional[float]:
    """Parse '$1,299.99' style strings into a float."""
    cleaned = re.sub(r"[^\d.]", "", raw.replace(",", ""))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_price(item: dict) -> Optional[float]:
    """Extract a float price from the formats scraping sources return."""
    price = item.get("price")
    if price is None:
        price = item.get("extracted_price")
    if price is None:
        return None
    if isinstance(price, dict):
        value = price.get("value") or price.get("current_price")
        if value is not None:
            try:
                value = float(value)
            except (TypeError, ValueError):
                return None
        else:
            value = _price_from_string(price.get("raw", "") or "")
    elif isinstance(price, bool):
        return None
    elif isinstance(price, (int, float)):
        value = float(price)
    elif isinstance(price, str):
        value = _price_from_string(price)
    else:
        return None
    if value is None or not is_finite_number(value) or value < 0:
        return None
    return value


def parse_rating(item: dict) -> Optional[float]:
    rating = item.get("rating")
    if rating is None or isinstance(rating, bool):
        return None
    try:
        rating = float(rating)
    except (TypeError, ValueError):
        return None
    if not is_finite_number(rating) or not 0 <= rating <= 5:
        return None
    return rating


def parse_reviews(item: dict) -> Optional[int]:
    for key in ("review_count", "reviews", "ratings_total", "reviews_total"):
        val = parse_count(item.get(key))
        if val is not None:
            return val
    return None


def _positive_int(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not is_finite_number(number) or number < 1:
        return None
    return int(number)


def _is_amazon_seller(name: str) -> bool:
    return bool(_AMAZON_SELLER_RE.match(name.strip().lower()))


def infer_fulfillment(item: dict) -> str:
    """Classify fulfillment from explicit fulfillment/seller fields only.

    A Prime badge is not evidence of FBA (merchant-fulfilled Prime exists),
    so ``is_prime`` is never read.  Anything not stated explicitly is UNKNOWN.
    """
    raw = item.get("fulfillment") or item.get("fulfillment_channel") or item.get("fulfilled_by")
    if raw:
        token = str(raw).strip().lower()
        if token in _AMAZON_RETAIL_TOKENS:
            return FULFILLMENT_AMAZON
        if any(t in token for t in _FBA_TOKENS):
            return FULFILLMENT_FBA
        if any(t in token for t in _FBM_TOKENS):
            return FULFILLMENT_FBM

    seller = str(item.get("sold_by") or item.get("seller") or "").strip()
    ships_from = str(item.get("ships_from") or "").strip()
    if seller and _is_amazon_seller(seller):
        return FULFILLMENT_AMAZON
    if seller and ships_from:
        return FULFILLMENT_FBA if _is_amazon_seller(ships_from) else FULFILLMENT_FBM
    return FULFILLMENT_UNKNOWN


def normalize_listing(item: dict, *, position: int) -> Listing:
    """Turn one raw search-result record into a Listing appearance."""
    brand = item.get("brand")
    brand = str(brand).strip() if brand is not None else None
    category = item.get("category")
    seller = item.get("sold_by") or item.get("seller")
    return Listing(
        asin=normalize_asin(item.get("asin")),
        price=parse_price(item),
        rating=parse_rating(item),
        review_count=parse_reviews(item),
        is_sponsored=bool(item.get("is_sponsored") or item.get("sponsored")),
        page_position=_positive_int(item.get("page_position") or item.get("position")) or position,
        brand=brand or None,
        fulfillment=infer_fulfillment(item),
        rank_in_category=_positive_int(item.get("rank_in_category") or item.get("bsr_rank")),
        category=str(category).strip() if category else None,
        title=item.get("title"),
        seller=str(seller).strip() if seller else None,
    )


# ---------------------------------------------------------------------------
# Canonicalisation
# ---------------------------------------------------------------------------

def canonicalize_page_one(raw_records: list[dict]) -> PageOne:
    """Collapse repeated ASIN appearances into one Listing per ASIN.

    The merged listing is sponsored if any appearance was sponsored, keeps
    its first page position and its best organic rank (None when it never
    appeared organically).  Records without an ASIN are kept as-is so that
    Tier-1 can decide to drop them.
    """
    appearances = [
        normalize_listing(item, position=i)
        for i, item in enumerate(raw_records or [], start=1)
        if isinstance(item, dict)
    ]
    appearances.sort(key=lambda a: a.page_position)

    organic_counter = 0
    for appearance in appearances:
        if not appearance.is_sponsored:
            organic_counter += 1
            appearance.organic_rank = organic_counter

    merged: dict[str, Listing] = {}
    order: list[Listing] = []
    for appearance in appearances:
        if not appearance.asin:
            order.append(appearance)
            continue
        existing = merged.get(appearance.asin)
        if existing is None:
            merged[appearance.asin] = appearance
            order.append(appearance)
            continue
        existing.is_sponsored = existing.is_sponsored or appearance.is_sponsored
        if appearance.organic_rank is not None and (
            existing.organic_rank is None or appearance.organic_rank < existing.organic_rank
        ):
            existing.organic_rank = appearance.organic_rank
        for name in ("price", "rating", "review_count", "brand", "rank_in_category",
                     "category", "title", "seller"):
            if getattr(existing, name) is None:
                setattr(existing, name, getattr(appearance, name))
        if existing.fulfillment == FULFILLMENT_UNKNOWN:
            existing.fulfillment = appearance.fulfillment

    if len(order) < len(appearances):
        logger.debug("Collapsed %d appearances into %d listings", len(appearances), len(order))

    return PageOne(
        listings=order,
        appearance_asins=[a.asin for a in appearances if a.asin],
    )
