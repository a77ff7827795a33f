"""SQLite-backed TTL cache for per-ASIN enrichment lookups, with in-flight de-duplication."""
import hashlib
import json
import logging
import threading
from concurrent.futures import Future
from datetime import timedelta
from typing import Callable

from sqlalchemy import func

from config import ENRICHMENT_CACHE_TTL_DAYS
from market_estimator.models.database import get_session, utcnow
from market_estimator.models.enrichment_cache_model import EnrichmentCacheEntry

logger = logging.getLogger(__name__)


class EnrichmentCache:
    """``get`` / ``put`` / ``dedupe`` over a shared cache table.

    ``dedupe`` collapses concurrent requests for the same key inside one
    process into a single call of the factory.
    """

    def __init__(
        self,
        session_factory=None,
        ttl_days: int = ENRICHMENT_CACHE_TTL_DAYS,
        namespace: str = "asin_rank",
    ):
        self._session_factory = session_factory or get_session
        self.ttl = timedelta(days=ttl_days)
        self.namespace = namespace
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future] = {}

    def _cache_key(self, key: str) -> str:
        """Generate a SHA256 hash for cache key."""
        raw = f"{self.namespace}|{key.strip().upper()}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def get(self, key: str) -> dict | None:
        """Return the cached value or None if not found / expired."""
        cache_key = self._cache_key(key)
        session = self._session_factory()
        try:
            entry = (
                session.query(EnrichmentCacheEntry)
                .filter_by(cache_key=cache_key)
                .first()
            )
            if entry is None:
                return None
            if entry.expires_at < utcnow():
                session.delete(entry)
                session.commit()
                return None
            entry.hit_count = (entry.hit_count or 0) + 1
            value = json.loads(entry.value_json)
            session.commit()
            return value
        except Exception:
            logger.exception("Error reading enrichment cache")
            session.rollback()
            return None
        finally:
            session.close()

    def put(self, key: str, value: dict, ttl: timedelta | None = None) -> None:
        """Store a value, replacing any existing entry for the key."""
        cache_key = self._cache_key(key)
        now = utcnow()
        session = self._session_factory()
        try:
            existing = (
                session.query(EnrichmentCacheEntry)
                .filter_by(cache_key=cache_key)
                .first()
            )
            if existing:
                session.delete(existing)
                session.flush()

            session.add(EnrichmentCacheEntry(
                cache_key=cache_key,
                value_json=json.dumps(value),
                created_at=now,
                expires_at=now + (ttl if ttl is not None else self.ttl),
                hit_count=0,
            ))
            session.commit()
        except Exception:
            logger.exception("Error writing enrichment cache")
            session.rollback()
        finally:
            session.close()

    def dedupe(self, key: str, factory: Callable[[], dict | None]) -> dict | None:
        """Return the cached value, or run ``factory`` once for all concurrent callers.

        A None result from the factory is handed to every waiter but not cached.
        """
        cache_key = self._cache_key(key)
        with self._lock:
            future = self._in_flight.get(cache_key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[cache_key] = future

        if not owner:
            return future.result()

        try:
            value = self.get(key)
            if value is None:
                value = factory()
                if value is not None:
                    self.put(key, value)
            future.set_result(value)
            return value
        except Exception as exc:
            future.set_exception(exc)
            raise
        finally:
            with self._lock:
                self._in_flight.pop(cache_key, None)

    def clear_expired(self) -> int:
        """Remove expired entries. Returns count of entries cleared."""
        session = self._session_factory()
        try:
            count = (
                session.query(EnrichmentCacheEntry)
                .filter(EnrichmentCacheEntry.expires_at < utcnow())
                .delete()
            )
            session.commit()
            return count
        except Exception:
            logger.exception("Error clearing expired enrichment cache")
            session.rollback()
            return 0
        finally:
            session.close()

    def get_stats(self) -> dict:
        """Return cache statistics."""
        session = self._session_factory()
        try:
            now = utcnow()
            total = session.query(EnrichmentCacheEntry).count()
            expired = (
                session.query(EnrichmentCacheEntry)
                .filter(EnrichmentCacheEntry.expires_at < now)
                .count()
            )
            total_hits = (
                session.query(func.coalesce(func.sum(EnrichmentCacheEntry.hit_count), 0))
                .scalar()
            )
            return {
                "total_entries": total,
                "active_entries": total - expired,
                "expired_entries": expired,
                "total_hits": int(total_hits),
                "in_flight": len(self._in_flight),
            }
        except Exception:
            logger.exception("Error getting enrichment cache stats")
            return {
                "total_entries": 0,
                "active_entries": 0,
                "expired_entries": 0,
                "total_hits": 0,
                "in_flight": len(self._in_flight),
            }
        finally:
            session.close()
