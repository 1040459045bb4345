"""Analytics, aggregation and cost-optimization schemas."""

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.schemas.tracing import TraceMetrics

Grade = Literal["A", "B", "C", "D", "F"]
Trend = Literal["increasing", "decreasing", "stable"]
Impact = Literal["high", "medium", "low"]
Effort = Literal["easy", "moderate", "complex"]


# Trace analytics


class PerformanceAnalysis(BaseModel):
    performance_grade: Grade
    recommendations: list[str]
    trends: dict[str, str]


class PerformanceReport(BaseModel):
    """Trace metrics with a letter grade and recommendations."""

    metrics: TraceMetrics
    analysis: PerformanceAnalysis


class ModelPerformanceAnalysis(BaseModel):
    model_id: str
    total_requests: int
    success_rate: float
    avg_duration: float
    avg_cost: float
    avg_tokens_per_second: float
    avg_quality_score: float | None = None
    cost_efficiency: float  # cost per token
    recommendation: Literal["excellent", "good", "fair", "poor"]


class ModelUsageShare(BaseModel):
    model: str
    usage: int
    percentage: float


class CostTrendPoint(BaseModel):
    period: str
    cost: float
    requests: int


class ErrorTypeShare(BaseModel):
    type: str
    count: int
    percentage: float


class ErrorAnalysis(BaseModel):
    total_errors: int
    error_rate: float
    top_error_types: list[ErrorTypeShare]


class UsageReport(BaseModel):
    """Totals, model shares, daily cost trend and error breakdown for a date range."""

    total_requests: int
    unique_users: int
    total_cost: float
    total_tokens: int
    avg_requests_per_user: float
    top_models: list[ModelUsageShare]
    cost_trends: list[CostTrendPoint]
    error_analysis: ErrorAnalysis


class LatencyPoint(BaseModel):
    period: str
    avg_latency: float
    p95_latency: float


class ThroughputPoint(BaseModel):
    period: str
    requests_per_hour: float


class CostOpportunity(BaseModel):
    recommendation: str
    potential_savings: float
    impact: Impact


class QualityPoint(BaseModel):
    period: str
    avg_score: float


class PromptQuality(BaseModel):
    prompt_id: str
    avg_score: float
    usage: int


class QualityInsights(BaseModel):
    avg_quality_score: float
    quality_trends: list[QualityPoint]
    top_performing_prompts: list[PromptQuality]


class PerformanceInsights(BaseModel):
    latency_trends: list[LatencyPoint]
    throughput_trends: list[ThroughputPoint]
    cost_optimization_opportunities: list[CostOpportunity]
    quality_insights: QualityInsights


class DashboardLive(BaseModel):
    active_traces: int
    avg_latency: float
    error_rate: float
    throughput: float  # requests per minute over the live window


class DashboardToday(BaseModel):
    total_requests: int
    total_cost: float
    avg_quality: float
    top_model: str


class DashboardAlert(BaseModel):
    type: Literal["warning", "error", "info"]
    message: str
    timestamp: datetime


class DashboardData(BaseModel):
    live: DashboardLive
    today: DashboardToday
    alerts: list[DashboardAlert]


# Metrics query (GET /tracing/metrics)


class TraceBreakdown(BaseModel):
    """Distributions over a set of traces.

    ``quality_distribution`` buckets the 0-5 trace quality scale at
    4.5/3.5/2.5, unlike the 0-1 buckets of model statistics.
    """

    count: int = 0
    cost_per_token: float = 0.0
    quality_distribution: dict[str, int] = Field(default_factory=dict)
    model_usage: dict[str, int] = Field(default_factory=dict)
    source_distribution: dict[str, int] = Field(default_factory=dict)
    error_types: dict[str, int] = Field(default_factory=dict)


class HourlyBucket(BaseModel):
    hour: str
    requests: int
    avg_latency: float
    error_rate: float
    cost: float


class MetricsComparison(BaseModel):
    previous: TraceMetrics
    change: dict[str, float]  # percent change per metric
    trends: dict[str, Trend]


class MetricsQueryResponse(BaseModel):
    """Aggregated metrics for a time range, optionally grouped and compared."""

    start: datetime
    end: datetime
    time_range: str | None = None
    metrics: TraceMetrics
    breakdown: TraceBreakdown
    trends: dict[str, Trend]
    groups: dict[str, TraceBreakdown] | None = None
    hourly: list[HourlyBucket] | None = None
    comparison: MetricsComparison | None = None
    data_points: int


# Aggregation


class AggregationRunResult(BaseModel):
    success: bool
    results: dict[str, Any]
    errors: list[str]


class AggregateRequest(BaseModel):
    target_date: date | None = None
    period_type: Literal["hour", "day", "week", "month"] = "day"


# Analytics service (rollup reads)


class UsageMetrics(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_response_time: float = 0.0
    avg_tokens_per_second: float = 0.0
    unique_users: int = 0
    error_rate: float = 0.0


class ModelComparison(BaseModel):
    model_id: str
    metrics: UsageMetrics
    cost_efficiency: float  # cost per token
    performance_score: float  # 0-100
    quality_score: float
    recommendation: str


class CostSuggestion(BaseModel):
    suggestion: str
    potential_savings: float
    impact: Impact


class DailyCost(BaseModel):
    date: date
    cost: float


class CostAnalysis(BaseModel):
    total_spend: float
    projected_monthly_spend: float
    cost_by_model: dict[str, float]
    cost_by_user: dict[str, float]
    cost_trends: list[DailyCost]
    optimization_opportunities: list[CostSuggestion]


class UsagePatterns(BaseModel):
    peak_hours: list[int]
    avg_session_duration: float
    requests_per_session: float


class UserAnalytics(BaseModel):
    user_id: str
    total_requests: int
    total_cost: float
    favorite_models: list[str]
    usage_patterns: UsagePatterns
    activity_trend: Trend


class SeriesPoint(BaseModel):
    date: date
    value: float


class ForecastPoint(SeriesPoint):
    confidence: float


class PredictiveAnalytics(BaseModel):
    metric: Literal["usage", "cost", "performance"]
    historical: list[SeriesPoint]
    forecast: list[ForecastPoint]
    trend: Trend
    insights: list[str]


# Cost optimizer


class RecommendationDetails(BaseModel):
    current_cost: float
    optimized_cost: float
    affected_requests: int
    timeframe: str


class CostOptimizationRecommendation(BaseModel):
    id: str
    type: Literal["model_switch", "usage_pattern", "batch_optimization", "cache_strategy"]
    title: str
    description: str
    impact: Impact
    potential_savings: float
    implementation_effort: Effort
    confidence: float = Field(..., ge=0, le=1)
    details: RecommendationDetails
    action_items: list[str] = Field(default_factory=list)


class ForecastFactor(BaseModel):
    factor: str
    impact: float  # percent
    explanation: str


class CostForecast(BaseModel):
    period: Literal["weekly", "monthly", "quarterly"]
    current: float
    forecasted: float
    trend: Trend
    confidence: float
    factors: list[ForecastFactor]


class ModelCostEfficiency(BaseModel):
    model_id: str
    cost_per_token: float
    cost_per_request: float
    quality_score: float
    performance_score: float
    efficiency_rating: Literal["excellent", "good", "average", "poor"]
    recommendations: list[str]


class CostAlert(BaseModel):
    type: Literal["budget_exceeded", "unusual_spike", "model_expensive"]
    severity: Literal["low", "medium", "high"]
    message: str
    value: float
    threshold: float
    timestamp: datetime
