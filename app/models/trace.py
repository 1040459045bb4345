"""Trace model - one durable row per AI interaction.

A trace is created when a generation starts (status ``pending``), moves to
``streaming`` when a client channel opens, and is finalized exactly once with
a terminal status plus token, cost and timing metrics.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class TraceStatus(str, Enum):
    """Lifecycle status of a trace."""

    PENDING = "pending"
    STREAMING = "streaming"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


# Plain string values, comparable with the status column
TERMINAL_STATUSES = frozenset(
    {TraceStatus.SUCCESS.value, TraceStatus.ERROR.value, TraceStatus.CANCELLED.value}
)
ACTIVE_STATUSES = frozenset({TraceStatus.PENDING.value, TraceStatus.STREAMING.value})


class TraceSource(str, Enum):
    """Where the interaction originated."""

    PLAYGROUND = "playground"
    API = "api"
    TEST = "test"


class Trace(Base, UUIDMixin, TimestampMixin):
    """Stores a single AI interaction with its outcome and metrics."""

    __tablename__ = "ai_interaction_traces"

    # Identity and correlation
    trace_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    parent_trace_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    session_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Request
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TraceSource.API.value
    )
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    prompt_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    # Outcome
    response_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    tokens_used: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    cost_calculation: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Timing
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    first_token_latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_per_second: Mapped[float | None] = mapped_column(Float, nullable=True)
    streaming_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Status and diagnostics
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TraceStatus.PENDING.value
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Quality
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    user_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Third-party observability correlation
    langfuse_trace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    langfuse_observation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    trace_version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0")

    __table_args__ = (
        Index("ix_trace_user_created", "user_id", "created_at"),
        Index("ix_trace_model_created", "model_id", "created_at"),
        Index("ix_trace_status", "status"),
        Index("ix_trace_session", "session_id"),
        Index("ix_trace_prompt", "prompt_id"),
        Index("ix_trace_created", "created_at"),
    )

    @property
    def total_cost(self) -> float:
        """Total cost in USD, 0 when not yet computed."""
        if not self.cost_calculation:
            return 0.0
        try:
            return float(self.cost_calculation.get("total_cost") or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def total_tokens(self) -> int:
        """Total tokens, 0 when not yet known."""
        if not self.tokens_used:
            return 0
        return int(self.tokens_used.get("total") or 0)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Trace(trace_id={self.trace_id}, model='{self.model_id}', "
            f"status='{self.status}', duration={self.duration_ms}ms)>"
        )
