"""Budgeted best-seller-rank enrichment for page-one listings."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Protocol

from market_estimator.services.enrichment_cache import EnrichmentCache
from market_estimator.services.listings import Listing, is_valid_asin, normalize_asin
from market_estimator.services.utils import is_finite_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankInfo:
    rank_in_category: int
    category: str | None = None

    def to_dict(self) -> dict:
        return {"rank_in_category": self.rank_in_category, "category": self.category}

    @classmethod
    def from_dict(cls, data: dict | None) -> "RankInfo | None":
        if not data:
            return None
        rank = data.get("rank_in_category")
        if not is_finite_number(rank) or rank <= 0:
            return None
        return cls(rank_in_category=int(rank), category=data.get("category"))


class RankSource(Protocol):
    def fetch_rank(self, asin: str) -> RankInfo | None:
        ...


class _BudgetSpent(Exception):
    pass


class EnrichmentBudget:
    """Caller-owned counter of upstream calls used against a maximum."""

    def __init__(self, max_calls: int, used: int = 0):
        self.max_calls = max_calls
        self.used = used
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        return max(0, self.max_calls - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.max_calls

    def try_consume(self) -> bool:
        """Reserve one call; False once the budget is spent."""
        with self._lock:
            if self.used >= self.max_calls:
                return False
            self.used += 1
            return True

    def __repr__(self) -> str:
        return f"<EnrichmentBudget {self.used}/{self.max_calls}>"


@dataclass
class EnrichmentResult:
    ranks: dict[str, RankInfo] = field(default_factory=dict)
    cache_hits: int = 0
    upstream_calls: int = 0
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "enriched": len(self.ranks),
            "cache_hits": self.cache_hits,
            "upstream_calls": self.upstream_calls,
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


def enrich_ranks(
    listings: list[Listing],
    source: RankSource,
    cache: EnrichmentCache,
    budget: EnrichmentBudget,
) -> EnrichmentResult:
    """Look up ``{rank_in_category, category}`` for each listing's ASIN.

    Listings that already carry a rank are used as-is.  Cached values are
    free; every upstream call is checked against ``budget`` first, and
    once it is spent the remaining ASINs are skipped, not queued.  A failed
    lookup only drops that ASIN.
    """
    result = EnrichmentResult()
    seen: set[str] = set()

    for listing in listings:
        asin = normalize_asin(listing.asin)
        if not is_valid_asin(asin) or asin in seen:
            continue
        seen.add(asin)

        if listing.rank_in_category:
            result.ranks[asin] = RankInfo(listing.rank_in_category, listing.category)
            continue

        cached = RankInfo.from_dict(cache.get(asin))
        if cached is not None:
            result.ranks[asin] = cached
            result.cache_hits += 1
            continue

        if budget.exhausted:
            result.skipped.append(asin)
            continue

        calls_before = result.upstream_calls

        def fetch(a=asin):
            # only reached when dedupe found nothing cached or in flight
            if not budget.try_consume():
                raise _BudgetSpent(a)
            result.upstream_calls += 1
            return _fetch_as_dict(source, a)

        try:
            value = cache.dedupe(asin, fetch)
        except _BudgetSpent:
            result.skipped.append(asin)
            continue
        except Exception:
            logger.exception("Rank enrichment failed for ASIN %s", asin)
            result.failed.append(asin)
            continue

        info = RankInfo.from_dict(value)
        if info is None:
            result.failed.append(asin)
        else:
            result.ranks[asin] = info
            if result.upstream_calls == calls_before:
                result.cache_hits += 1

    if result.skipped:
        logger.info(
            "Enrichment budget exhausted (%s): skipped %d ASINs",
            budget, len(result.skipped),
        )
    return result


def _fetch_as_dict(source: RankSource, asin: str) -> dict | None:
    info = source.fetch_rank(asin)
    return info.to_dict() if info is not None else None
