"""TraceEvent model - append-only log of what happened inside a trace."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType, UUIDMixin, utcnow


class TraceEventType(str, Enum):
    """Types of trace events."""

    START = "start"
    TOKEN = "token"
    STRUCTURED = "structured"
    ERROR = "error"
    COMPLETE = "complete"
    USER_ACTION = "user_action"


class TraceEvent(Base, UUIDMixin):
    """A single event in a trace, ordered by sequence_number.

    Display order relies on sequence_number, not on wall-clock timestamp.
    """

    __tablename__ = "trace_events"

    trace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    event_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_trace_event_trace_seq", "trace_id", "sequence_number"),
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<TraceEvent(trace_id={self.trace_id}, type='{self.event_type}', "
            f"seq={self.sequence_number})>"
        )
