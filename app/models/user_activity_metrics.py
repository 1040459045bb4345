"""UserActivityMetrics model - per user x day activity rollup."""

from datetime import date

from sqlalchemy import Date, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, UUIDMixin


class UserActivityMetrics(Base, UUIDMixin, TimestampMixin):
    """Daily activity summary for one user."""

    __tablename__ = "user_activity_metrics"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_prompts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_models_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Hour of day (UTC, 0-23) with the most traces; null when no traces were found
    peak_usage_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    most_used_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    most_used_prompt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avg_session_duration_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    requests_per_session: Mapped[float | None] = mapped_column(Float, nullable=True)

    playground_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    api_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_user_activity_natural_key"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<UserActivityMetrics(user={self.user_id}, date={self.date}, "
            f"requests={self.total_requests})>"
        )
