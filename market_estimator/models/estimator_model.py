"""Estimator model versions -- immutable trained coefficient sets plus the active pointer."""
import json
from datetime import datetime

from sqlalchemy import Integer, Float, Text, DateTime, ForeignKey, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from market_estimator.models.database import Base, ImmutableRecordError, utcnow


class EstimatorModelVersion(Base):
    """One training run's output.  Rows are never updated after insert."""

    __tablename__ = "estimator_model_versions"
    __table_args__ = (
        UniqueConstraint("marketplace", "model_type", "model_version", name="uq_estimator_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    marketplace: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    model_type: Mapped[str] = mapped_column(Text, nullable=False)
    model_version: Mapped[str] = mapped_column(Text, nullable=False)
    coefficients_json: Mapped[str] = mapped_column(Text, nullable=False)
    trained_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    training_rows: Mapped[int] = mapped_column(Integer, nullable=False)
    r_squared: Mapped[float | None] = mapped_column(Float, nullable=True)
    mae: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def coefficients(self) -> dict:
        return json.loads(self.coefficients_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "marketplace": self.marketplace,
            "model_type": self.model_type,
            "model_version": self.model_version,
            "coefficients": self.coefficients,
            "trained_at": self.trained_at,
            "training_rows": self.training_rows,
            "diagnostics": {"r_squared": self.r_squared, "mae": self.mae},
        }

    def __repr__(self) -> str:
        return (
            f"<EstimatorModelVersion {self.marketplace}/{self.model_type} "
            f"{self.model_version!r}>"
        )


class ActiveEstimatorModel(Base):
    """Pointer to the active version for one (marketplace, model_type) key."""

    __tablename__ = "active_estimator_models"
    __table_args__ = (
        UniqueConstraint("marketplace", "model_type", name="uq_active_estimator_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    marketplace: Mapped[str] = mapped_column(Text, nullable=False)
    model_type: Mapped[str] = mapped_column(Text, nullable=False)
    version_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("estimator_model_versions.id"), nullable=False
    )
    activated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    version = relationship("EstimatorModelVersion")

    def __repr__(self) -> str:
        return f"<ActiveEstimatorModel {self.marketplace}/{self.model_type} -> {self.version_id}>"


@event.listens_for(EstimatorModelVersion, "before_update")
def _reject_version_update(mapper, connection, target):
    raise ImmutableRecordError(f"{target!r} is immutable")
