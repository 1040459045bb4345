"""Analytics over persisted traces and their rollups."""

from app.services.analytics.aggregation import AggregationService
from app.services.analytics.analytics_service import AnalyticsService
from app.services.analytics.cost_optimizer import CostOptimizer
from app.services.analytics.trace_analytics import TraceAnalytics

__all__ = [
    "AggregationService",
    "AnalyticsService",
    "CostOptimizer",
    "TraceAnalytics",
]
