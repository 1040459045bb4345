"""UsageAnalyticsDaily model - per day x user x model x source rollup of traces."""

from datetime import date

from sqlalchemy import Date, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, UUIDMixin


class UsageAnalyticsDaily(Base, UUIDMixin, TimestampMixin):
    """Daily usage rollup, the input for cost analysis and user activity passes."""

    __tablename__ = "usage_analytics_daily"

    date: Mapped[date] = mapped_column(Date, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_tokens_per_second: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "date", "user_id", "model_id", "source", name="uq_usage_daily_natural_key"
        ),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<UsageAnalyticsDaily(date={self.date}, user={self.user_id}, "
            f"model='{self.model_id}', requests={self.total_requests})>"
        )
