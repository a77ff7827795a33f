"""Analysis snapshot model -- one keyword/ASIN analysis and its Tier-2 refinement."""
import json
from datetime import datetime

from sqlalchemy import Integer, Text, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from market_estimator.models.database import Base, utcnow


class AnalysisSnapshot(Base):
    __tablename__ = "analysis_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    marketplace: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False)  # "KEYWORD" or "ASIN"
    query: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_appearances_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    listings_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    tier1_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    brand_moat_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    margin_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier2_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    refinement = relationship(
        "Tier2RefinementRecord", back_populates="snapshot", uselist=False
    )

    @property
    def tier1(self) -> dict:
        return json.loads(self.tier1_json or "{}")

    @property
    def margin(self) -> dict | None:
        return json.loads(self.margin_json) if self.margin_json else None

    def __repr__(self) -> str:
        return f"<AnalysisSnapshot id={self.id} {self.mode} {self.query!r}>"


class Tier2RefinementRecord(Base):
    """Refinement output stored beside, never inside, the Tier-1 snapshot."""

    __tablename__ = "tier2_refinements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("analysis_snapshots.id"), nullable=False, unique=True
    )
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    snapshot = relationship("AnalysisSnapshot", back_populates="refinement")

    @property
    def payload(self) -> dict:
        return json.loads(self.payload_json)

    def __repr__(self) -> str:
        return f"<Tier2RefinementRecord snapshot_id={self.snapshot_id}>"
