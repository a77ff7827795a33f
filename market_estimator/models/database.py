"""Database engine, session factory, and base model."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import DATABASE_URL

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL, echo=False)
SessionLocal = sessionmaker(bind=engine)


class Base(DeclarativeBase):
    pass


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to update an append-only row."""


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_session():
    """Return a new database session."""
    return SessionLocal()


@contextmanager
def with_db():
    """Context manager that yields a DB session and auto-closes it.

    Usage::

        with with_db() as db:
            versions = db.query(EstimatorModelVersion).all()
        # session is closed automatically, even on exception
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _migrate_indexes(bind):
    """Create composite indexes on commonly-queried columns for existing databases."""
    _composite_indexes = [
        ("ix_market_observations_marketplace_created_at", "market_observations", "marketplace, created_at"),
        ("ix_estimator_model_versions_key_trained_at", "estimator_model_versions", "marketplace, model_type, trained_at"),
    ]
    inspector = inspect(bind)
    tables = inspector.get_table_names()
    with bind.begin() as conn:
        for idx_name, table, columns in _composite_indexes:
            if table not in tables:
                continue
            existing = {idx["name"] for idx in inspector.get_indexes(table)}
            if idx_name not in existing:
                logger.info("Creating index %s on %s(%s)", idx_name, table, columns)
                conn.execute(text(
                    f"CREATE INDEX IF NOT EXISTS {idx_name} ON {table} ({columns})"
                ))


def init_db(bind=None):
    """Create all tables defined by Base subclasses."""
    # Import all models so they register with Base.metadata
    import market_estimator.models.estimator_model  # noqa: F401
    import market_estimator.models.market_observation  # noqa: F401
    import market_estimator.models.analysis_snapshot  # noqa: F401
    import market_estimator.models.enrichment_cache_model  # noqa: F401

    bind = bind if bind is not None else engine
    Base.metadata.create_all(bind=bind)
    _migrate_indexes(bind)
