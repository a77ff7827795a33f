"""Amazon SP-API catalog client used as the rank/category enrichment source."""
import logging
import time

from sp_api.api import CatalogItems
from sp_api.base import Marketplaces

from config import (
    DEFAULT_MARKETPLACE,
    SP_API_REFRESH_TOKEN,
    SP_API_LWA_APP_ID,
    SP_API_LWA_CLIENT_SECRET,
    SP_API_AWS_ACCESS_KEY,
    SP_API_AWS_SECRET_KEY,
    SP_API_ROLE_ARN,
)
from market_estimator.services.rank_enrichment import RankInfo

logger = logging.getLogger(__name__)


class CatalogRankClient:
    """Wrapper around python-amazon-sp-api returning best-seller ranks."""

    _RATE_LIMIT_DELAY = 0.6  # seconds between requests (2 req/s limit)
    _RETRY_MAX_ATTEMPTS = 3
    _RETRY_DELAYS = [1, 2, 4]  # exponential backoff for 429s

    def __init__(self, credentials: dict | None = None, marketplace: str = DEFAULT_MARKETPLACE):
        self.credentials = credentials or self._default_credentials()
        self.marketplace = Marketplaces[marketplace]
        self._catalog = None
        self._last_call = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_rank(self, asin: str) -> RankInfo | None:
        """Return the top-level category rank for one ASIN, or None."""
        self._throttle()
        payload = self._fetch_item(asin)
        if payload is None:
            return None
        return self._parse_rank(payload)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_catalog(self) -> CatalogItems:
        if self._catalog is None:
            self._catalog = CatalogItems(credentials=self.credentials, marketplace=self.marketplace)
        return self._catalog

    def _throttle(self) -> None:
        wait = self._RATE_LIMIT_DELAY - (time.monotonic() - self._last_call)
        if wait > 0:
            time.sleep(wait)
        self._last_call = time.monotonic()

    def _fetch_item(self, asin: str) -> dict | None:
        """Fetch a single ASIN with retry on 429 errors."""
        catalog = self._get_catalog()
        for attempt in range(self._RETRY_MAX_ATTEMPTS):
            try:
                response = catalog.get_catalog_item(
                    asin,
                    marketplaceIds=[self.marketplace.marketplace_id],
                    includedData=["salesRanks", "summaries"],
                )
                return response.payload or {}
            except Exception as exc:
                exc_str = str(exc)
                is_throttle = "429" in exc_str or "QuotaExceeded" in exc_str
                if is_throttle and attempt < self._RETRY_MAX_ATTEMPTS - 1:
                    delay = self._RETRY_DELAYS[attempt]
                    logger.warning(
                        "SP-API throttled for ASIN %s (attempt %d/%d), retrying in %ds",
                        asin, attempt + 1, self._RETRY_MAX_ATTEMPTS, delay,
                    )
                    time.sleep(delay)
                else:
                    logger.error("SP-API error for ASIN %s: %s", asin, exc)
                    return None
        return None

    @staticmethod
    def _parse_rank(payload: dict) -> RankInfo | None:
        """Prefer the website display-group rank (top-level category)."""
        for entry in payload.get("salesRanks", []) or []:
            for group in entry.get("displayGroupRanks", []) or []:
                if group.get("rank"):
                    return RankInfo(int(group["rank"]), group.get("title"))
            for classification in entry.get("classificationRanks", []) or []:
                if classification.get("rank"):
                    return RankInfo(int(classification["rank"]), classification.get("title"))
        return None

    @staticmethod
    def _default_credentials() -> dict:
        """Build credentials dict from config env vars."""
        return {
            "refresh_token": SP_API_REFRESH_TOKEN,
            "lwa_app_id": SP_API_LWA_APP_ID,
            "lwa_client_secret": SP_API_LWA_CLIENT_SECRET,
            "aws_access_key": SP_API_AWS_ACCESS_KEY,
            "aws_secret_key": SP_API_AWS_SECRET_KEY,
            "role_arn": SP_API_ROLE_ARN,
        }
