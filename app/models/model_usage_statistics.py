"""ModelUsageStatistics model - per model x period rollup."""

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class ModelUsageStatistics(Base, UUIDMixin, TimestampMixin):
    """Aggregated statistics for one model over one hour/day/week/month."""

    __tablename__ = "model_usage_statistics"

    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    period_type: Mapped[str] = mapped_column(String(10), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_response_time_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_tokens_per_second: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cost_per_token: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cost_per_request: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_quality_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # {"excellent": n, "good": n, "fair": n, "poor": n} on a 0-1 quality scale
    quality_distribution: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    error_types: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    common_errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint(
            "model_id", "period_type", "period_start", name="uq_model_stats_natural_key"
        ),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<ModelUsageStatistics(model='{self.model_id}', period={self.period_type}, "
            f"start={self.period_start}, requests={self.total_requests})>"
        )
