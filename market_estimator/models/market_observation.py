"""Market observation model -- append-only training data for the calibrated estimator."""
import json
from datetime import datetime

from sqlalchemy import Integer, Text, DateTime, event
from sqlalchemy.orm import Mapped, mapped_column

from market_estimator.models.database import Base, ImmutableRecordError, utcnow


class MarketObservation(Base):
    __tablename__ = "market_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    marketplace: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    keyword: Mapped[str | None] = mapped_column(Text, nullable=True)
    normalized_keyword: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    snapshot_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    listings_summary_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    estimator_inputs_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    estimator_outputs_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    tier1_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier2_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_quality_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "marketplace": self.marketplace,
            "keyword": self.keyword,
            "normalized_keyword": self.normalized_keyword,
            "snapshot_id": self.snapshot_id,
            "category": self.category,
            "listings_summary": json.loads(self.listings_summary_json or "{}"),
            "estimator_inputs": json.loads(self.estimator_inputs_json or "{}"),
            "estimator_outputs": json.loads(self.estimator_outputs_json or "{}"),
            "tier1": json.loads(self.tier1_json) if self.tier1_json else None,
            "tier2": json.loads(self.tier2_json) if self.tier2_json else None,
            "reference": json.loads(self.reference_json) if self.reference_json else None,
            "data_quality": json.loads(self.data_quality_json or "{}"),
            "created_at": self.created_at,
        }

    def __repr__(self) -> str:
        return f"<MarketObservation id={self.id} keyword={self.keyword!r}>"


@event.listens_for(MarketObservation, "before_update")
def _reject_observation_update(mapper, connection, target):
    raise ImmutableRecordError("market observations are append-only")
