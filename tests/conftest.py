import os
import tempfile

# Config reads the environment at import time
os.environ.setdefault("MARKET_ESTIMATOR_DATA_DIR", tempfile.mkdtemp(prefix="market_estimator_test_"))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from market_estimator.models.database import init_db
from market_estimator.services.listings import Listing


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database for tests that touch it from several threads."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'threads.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=eng)
    yield sessionmaker(bind=eng)
    eng.dispose()


def _asin(i: int) -> str:
    return f"B0TEST{i:04d}"


@pytest.fixture
def make_raw_records():
    """Build raw search-result records like the listing source returns."""

    def _make(count=10, price=25.0, reviews=300, brand="Brandy", sponsored_every=None, **extra):
        records = []
        for i in range(1, count + 1):
            record = {
                "asin": _asin(i),
                "title": f"Product {i}",
                "price": price,
                "rating": 4.4,
                "reviews": reviews,
                "brand": brand,
                "position": i,
                "is_sponsored": bool(sponsored_every and i % sponsored_every == 0),
            }
            record.update(extra)
            records.append(record)
        return records

    return _make


@pytest.fixture
def make_listings():
    """Build canonical Listing objects directly."""

    def _make(count=10, price=25.0, reviews=300, brand="Brandy", **extra):
        return [
            Listing(
                asin=_asin(i),
                price=price,
                rating=4.4,
                review_count=reviews,
                page_position=i,
                organic_rank=i,
                brand=brand,
                **extra,
            )
            for i in range(1, count + 1)
        ]

    return _make
