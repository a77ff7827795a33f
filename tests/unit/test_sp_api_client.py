from unittest.mock import MagicMock

import pytest

from market_estimator.services import sp_api_client
from market_estimator.services.rank_enrichment import RankInfo
from market_estimator.services.sp_api_client import CatalogRankClient

PAYLOAD = {
    "asin": "B000000001",
    "salesRanks": [{
        "marketplaceId": "ATVPDKIKX0DER",
        "classificationRanks": [{"title": "Garlic Presses", "rank": 12}],
        "displayGroupRanks": [{"title": "Home & Kitchen", "rank": 4521}],
    }],
}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(sp_api_client.time, "sleep", lambda s: None)
    c = CatalogRankClient(credentials={"refresh_token": "x"}, marketplace="US")
    c._catalog = MagicMock()
    return c


def test_display_group_rank_is_preferred():
    assert CatalogRankClient._parse_rank(PAYLOAD) == RankInfo(4521, "Home & Kitchen")


def test_classification_rank_fallback():
    payload = {"salesRanks": [{"classificationRanks": [{"title": "Garlic Presses", "rank": 12}]}]}
    assert CatalogRankClient._parse_rank(payload) == RankInfo(12, "Garlic Presses")
    assert CatalogRankClient._parse_rank({"salesRanks": []}) is None


def test_fetch_rank(client):
    client._catalog.get_catalog_item.return_value = MagicMock(payload=PAYLOAD)
    assert client.fetch_rank("B000000001") == RankInfo(4521, "Home & Kitchen")
    kwargs = client._catalog.get_catalog_item.call_args.kwargs
    assert kwargs["includedData"] == ["salesRanks", "summaries"]


def test_throttled_call_is_retried(client):
    client._catalog.get_catalog_item.side_effect = [
        Exception("429 QuotaExceeded"),
        MagicMock(payload=PAYLOAD),
    ]
    assert client.fetch_rank("B000000001").rank_in_category == 4521
    assert client._catalog.get_catalog_item.call_count == 2


def test_other_errors_return_none(client):
    client._catalog.get_catalog_item.side_effect = Exception("403 Unauthorized")
    assert client.fetch_rank("B000000001") is None
    assert client._catalog.get_catalog_item.call_count == 1
