"""SQLAlchemy models for the tracing and analytics engine."""

from app.models.base import Base, JSONType, TimestampMixin, UUIDMixin
from app.models.cost_analysis_summary import CostAnalysisSummary
from app.models.model_usage_statistics import ModelUsageStatistics
from app.models.prompt_performance_trend import PromptPerformanceTrend
from app.models.trace import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Trace,
    TraceSource,
    TraceStatus,
)
from app.models.trace_event import TraceEvent, TraceEventType
from app.models.usage_daily import UsageAnalyticsDaily
from app.models.user_activity_metrics import UserActivityMetrics

__all__ = [
    # Base
    "Base",
    "JSONType",
    "TimestampMixin",
    "UUIDMixin",
    # Models
    "Trace",
    "TraceEvent",
    "UsageAnalyticsDaily",
    "ModelUsageStatistics",
    "CostAnalysisSummary",
    "UserActivityMetrics",
    "PromptPerformanceTrend",
    # Enums
    "TraceStatus",
    "TraceSource",
    "TraceEventType",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
]
