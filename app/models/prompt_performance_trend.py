"""PromptPerformanceTrend model - per prompt x day performance rollup."""

from datetime import date

from sqlalchemy import Date, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class PromptPerformanceTrend(Base, UUIDMixin, TimestampMixin):
    """How one library prompt performed on one day."""

    __tablename__ = "prompt_performance_trends"

    prompt_id: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    total_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_cost_per_use: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_duration_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_quality_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_user_rating: Mapped[float | None] = mapped_column(Float, nullable=True)

    # {model_id: uses}
    model_usage: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("prompt_id", "date", name="uq_prompt_trend_natural_key"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<PromptPerformanceTrend(prompt={self.prompt_id}, date={self.date}, "
            f"uses={self.total_uses})>"
        )
