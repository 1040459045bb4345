"""CostAnalysisSummary model - spend rollup per period with recommendations."""

from datetime import date

from sqlalchemy import Date, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class CostAnalysisSummary(Base, UUIDMixin, TimestampMixin):
    """Total spend for a day/week/month/quarter broken down by model and user."""

    __tablename__ = "cost_analysis_summary"

    period_type: Mapped[str] = mapped_column(String(10), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    model_costs: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    user_costs: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    cost_change_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost_forecast: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    optimization_recommendations: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list
    )
    potential_savings: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    top_users: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("period_type", "period_start", name="uq_cost_summary_natural_key"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<CostAnalysisSummary(period={self.period_type}, start={self.period_start}, "
            f"total_cost={self.total_cost:.4f})>"
        )
