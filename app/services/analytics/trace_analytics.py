"""Trace analytics - grades, per-model analysis, usage reports and dashboards over raw traces."""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Trace, TraceStatus
from app.schemas.analytics import (
    CostOpportunity,
    CostTrendPoint,
    DashboardAlert,
    DashboardData,
    DashboardLive,
    DashboardToday,
    ErrorAnalysis,
    ErrorTypeShare,
    HourlyBucket,
    LatencyPoint,
    MetricsComparison,
    MetricsQueryResponse,
    ModelPerformanceAnalysis,
    ModelUsageShare,
    PerformanceAnalysis,
    PerformanceInsights,
    PerformanceReport,
    PromptQuality,
    QualityInsights,
    QualityPoint,
    ThroughputPoint,
    TraceBreakdown,
    UsageReport,
)
from app.schemas.tracing import TraceFilters, TraceMetrics
from app.services.analytics.trends import (
    classify_change,
    classify_trend,
    mean,
    percentage,
    percentile_95,
    top_counts,
)
from app.services.tracing import AnalyticsQueryError, TraceService
from app.services.tracing.service import LIVE_WINDOW
from app.utils.time import day_bounds, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# (grade, max error rate %, max avg duration ms, max avg first-token latency ms)
GRADE_THRESHOLDS = (
    ("A", 1, 2000, 500),
    ("B", 5, 5000, 1000),
    ("C", 10, 10000, 2000),
    ("D", 20, 20000, 5000),
)

# (recommendation, min success rate %, max avg duration ms, max cost per token)
MODEL_RECOMMENDATION_THRESHOLDS = (
    ("excellent", 95, 3000, 0.001),
    ("good", 90, 5000, 0.005),
    ("fair", 80, 10000, None),
)

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

TOP_MODELS_LIMIT = 10
TOP_ERROR_TYPES_LIMIT = 5
TOP_PROMPTS_LIMIT = 10
METRICS_QUERY_TRACE_LIMIT = 1000

# Average cost per request above which the priciest model is flagged
EXPENSIVE_MODEL_AVG_COST = 0.01
EXPENSIVE_MODEL_SAVINGS_RATE = 0.3

DASHBOARD_ERROR_RATE_ALERT = 10
DASHBOARD_LATENCY_ALERT_MS = 5000


def grade_performance(metrics: TraceMetrics) -> str:
    """Letter grade from error rate, average duration and first-token latency."""
    for grade, max_error, max_duration, max_latency in GRADE_THRESHOLDS:
        if (
            metrics.error_rate < max_error
            and metrics.average_duration < max_duration
            and metrics.average_latency < max_latency
        ):
            return grade
    return "F"


def recommend_model(success_rate: float, avg_duration: float, cost_efficiency: float) -> str:
    for label, min_success, max_duration, max_cost in MODEL_RECOMMENDATION_THRESHOLDS:
        if (
            success_rate > min_success
            and avg_duration < max_duration
            and (max_cost is None or cost_efficiency < max_cost)
        ):
            return label
    return "poor"


def day_key(trace: Any) -> str:
    return ensure_utc(trace.created_at).date().isoformat()


def hour_key(trace: Any) -> str:
    return ensure_utc(trace.created_at).strftime("%Y-%m-%dT%H")


def bucket_by(traces: Iterable[Any], key) -> list[tuple[str, list[Any]]]:
    """Group traces by ``key(trace)``, sorted by key."""
    groups: dict[str, list[Any]] = defaultdict(list)
    for trace in traces:
        groups[key(trace)].append(trace)
    return sorted(groups.items())


def breakdown(traces: list[Any]) -> TraceBreakdown:
    """Cost per token plus quality, model, source and error distributions."""
    if not traces:
        return TraceBreakdown()

    total_cost = sum(t.total_cost for t in traces)
    total_tokens = sum(t.total_tokens for t in traces)
    scores = [t.quality_score for t in traces if t.quality_score]

    return TraceBreakdown(
        count=len(traces),
        cost_per_token=total_cost / total_tokens if total_tokens > 0 else 0.0,
        # 0-5 trace quality scale
        quality_distribution={
            "excellent": sum(1 for s in scores if s >= 4.5),
            "good": sum(1 for s in scores if 3.5 <= s < 4.5),
            "average": sum(1 for s in scores if 2.5 <= s < 3.5),
            "poor": sum(1 for s in scores if s < 2.5),
        },
        model_usage=dict(Counter(t.model_id for t in traces)),
        source_distribution=dict(Counter(t.source for t in traces)),
        error_types=dict(
            Counter(
                t.error_code or "unknown"
                for t in traces
                if t.status == TraceStatus.ERROR.value
            )
        ),
    )


class TraceAnalytics:
    """Analytics computed directly from trace rows.

    Args:
        db: Database session
        trace_service: Used for the shared metrics and live snapshot reads
    """

    def __init__(self, db: AsyncSession, trace_service: TraceService | None = None):
        self.db = db
        self.trace_service = trace_service or TraceService(db)

    async def _fetch(self, query: Select, what: str) -> list[Trace]:
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Failed to {what}: {e}", exc_info=True)
            raise AnalyticsQueryError(f"Failed to {what}: {e}") from e
        return list(result.scalars().all())

    async def _traces_between(
        self, start: datetime, end: datetime, what: str, filters: TraceFilters | None = None
    ) -> list[Trace]:
        query = (
            select(Trace)
            .where(Trace.created_at >= ensure_utc(start))
            .where(Trace.created_at <= ensure_utc(end))
        )
        if filters is not None:
            if filters.user_id:
                query = query.where(Trace.user_id == filters.user_id)
            if filters.model:
                query = query.where(Trace.model_id == filters.model)
            if filters.source:
                query = query.where(Trace.source == filters.source)
        return await self._fetch(query.order_by(Trace.created_at.asc()), what)

    async def get_performance_metrics(self, filters: TraceFilters | None = None) -> PerformanceReport:
        """Trace metrics with a letter grade, recommendations and daily trends."""
        filters = filters or TraceFilters()
        metrics = await self.trace_service.get_trace_metrics(filters)

        recommendations = []
        if metrics.error_rate > 5:
            recommendations.append(
                f"High error rate ({metrics.error_rate:.1f}%) - investigate common failure patterns"
            )
        if metrics.average_duration > 10000:
            recommendations.append(
                f"Slow average response time ({metrics.average_duration:.0f}ms) - "
                "consider model optimization"
            )
        if metrics.average_latency > 2000:
            recommendations.append(
                f"High first token latency ({metrics.average_latency:.0f}ms) - review model selection"
            )
        if metrics.streaming_rate < 50:
            recommendations.append(
                f"Low streaming adoption ({metrics.streaming_rate:.1f}%) - "
                "promote streaming for better UX"
            )

        end = ensure_utc(filters.end_date) or utc_now()
        start = ensure_utc(filters.start_date) or end - timedelta(days=7)
        days = bucket_by(
            await self._traces_between(start, end, "load performance trends", filters), day_key
        )

        latency = classify_trend(
            [mean([t.first_token_latency_ms for t in ts if t.first_token_latency_ms]) for _, ts in days]
        )
        throughput = classify_trend([len(ts) for _, ts in days])
        cost = classify_trend([sum(t.total_cost for t in ts) for _, ts in days])
        quality = classify_trend(
            [mean([t.quality_score for t in ts if t.quality_score]) for _, ts in days]
        )

        return PerformanceReport(
            metrics=metrics,
            analysis=PerformanceAnalysis(
                performance_grade=grade_performance(metrics),
                recommendations=recommendations,
                trends={
                    "latency": {"increasing": "degrading", "decreasing": "improving"}.get(
                        latency, "stable"
                    ),
                    "throughput": throughput,
                    "cost": {"increasing": "increasing", "decreasing": "optimizing"}.get(
                        cost, "stable"
                    ),
                    "quality": {"increasing": "improving", "decreasing": "declining"}.get(
                        quality, "stable"
                    ),
                },
            ),
        )

    async def analyze_model_performance(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[ModelPerformanceAnalysis]:
        """Per-model success, speed and cost efficiency, most used model first.

        Defaults to the last 7 days.
        """
        end = end or utc_now()
        start = start or end - timedelta(days=7)
        traces = await self._traces_between(start, end, "analyze model performance")

        by_model: dict[str, list[Trace]] = defaultdict(list)
        for trace in traces:
            by_model[trace.model_id].append(trace)

        analyses = []
        for model_id, model_traces in by_model.items():
            total = len(model_traces)
            total_cost = sum(t.total_cost for t in model_traces)
            total_tokens = sum(t.total_tokens for t in model_traces)
            success_rate = percentage(
                sum(1 for t in model_traces if t.status == TraceStatus.SUCCESS.value), total
            )
            avg_duration = sum(t.duration_ms or 0 for t in model_traces) / total
            cost_efficiency = total_cost / total_tokens if total_tokens > 0 else 0.0
            scores = [t.quality_score for t in model_traces if t.quality_score]

            analyses.append(
                ModelPerformanceAnalysis(
                    model_id=model_id,
                    total_requests=total,
                    success_rate=success_rate,
                    avg_duration=avg_duration,
                    avg_cost=total_cost / total,
                    avg_tokens_per_second=mean(
                        [t.tokens_per_second for t in model_traces if t.tokens_per_second]
                    ),
                    avg_quality_score=mean(scores) if scores else None,
                    cost_efficiency=cost_efficiency,
                    recommendation=recommend_model(success_rate, avg_duration, cost_efficiency),
                )
            )

        return sorted(analyses, key=lambda a: a.total_requests, reverse=True)

    async def generate_usage_report(self, start: datetime, end: datetime) -> UsageReport:
        """Totals, model shares, daily costs and error types for a date range."""
        traces = await self._traces_between(start, end, "generate usage report")

        total = len(traces)
        unique_users = len({t.user_id for t in traces})
        errors = [t for t in traces if t.status == TraceStatus.ERROR.value]

        return UsageReport(
            total_requests=total,
            unique_users=unique_users,
            total_cost=sum(t.total_cost for t in traces),
            total_tokens=sum(t.total_tokens for t in traces),
            avg_requests_per_user=total / unique_users if unique_users else 0.0,
            top_models=[
                ModelUsageShare(model=model, usage=count, percentage=percentage(count, total))
                for model, count in top_counts((t.model_id for t in traces), TOP_MODELS_LIMIT)
            ],
            cost_trends=[
                CostTrendPoint(
                    period=day,
                    cost=sum(t.total_cost for t in day_traces),
                    requests=len(day_traces),
                )
                for day, day_traces in bucket_by(traces, day_key)
            ],
            error_analysis=ErrorAnalysis(
                total_errors=len(errors),
                error_rate=percentage(len(errors), total),
                top_error_types=[
                    ErrorTypeShare(type=code, count=count, percentage=percentage(count, len(errors)))
                    for code, count in top_counts(
                        (t.error_code or "UNKNOWN" for t in errors), TOP_ERROR_TYPES_LIMIT
                    )
                ],
            ),
        )

    async def get_performance_insights(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> PerformanceInsights:
        """Daily latency, throughput and quality series plus cost opportunities.

        Defaults to the last 30 days.
        """
        end = end or utc_now()
        start = start or end - timedelta(days=30)
        traces = await self._traces_between(start, end, "get performance insights")
        days = bucket_by(traces, day_key)

        latency_trends = []
        for day, day_traces in days:
            latencies = [t.first_token_latency_ms for t in day_traces if t.first_token_latency_ms is not None]
            latency_trends.append(
                LatencyPoint(
                    period=day,
                    avg_latency=mean(latencies),
                    p95_latency=percentile_95(latencies),
                )
            )

        # Requests per hour, approximated from the daily count
        throughput_trends = [
            ThroughputPoint(period=day, requests_per_hour=len(day_traces) / 24)
            for day, day_traces in days
        ]

        scores = [t.quality_score for t in traces if t.quality_score is not None]
        quality_trends = [
            QualityPoint(
                period=day,
                avg_score=mean([t.quality_score for t in day_traces if t.quality_score is not None]),
            )
            for day, day_traces in days
        ]

        by_prompt: dict[str, list[float]] = defaultdict(list)
        for trace in traces:
            if trace.prompt_id and trace.quality_score:
                by_prompt[trace.prompt_id].append(trace.quality_score)
        top_prompts = sorted(
            (
                PromptQuality(prompt_id=prompt_id, avg_score=mean(values), usage=len(values))
                for prompt_id, values in by_prompt.items()
            ),
            key=lambda p: p.avg_score,
            reverse=True,
        )[:TOP_PROMPTS_LIMIT]

        return PerformanceInsights(
            latency_trends=latency_trends,
            throughput_trends=throughput_trends,
            cost_optimization_opportunities=self.identify_cost_optimizations(traces),
            quality_insights=QualityInsights(
                avg_quality_score=mean(scores),
                quality_trends=quality_trends,
                top_performing_prompts=top_prompts,
            ),
        )

    @staticmethod
    def identify_cost_optimizations(traces: list[Any]) -> list[CostOpportunity]:
        """Flag the model with the highest average cost when it is expensive."""
        by_model: dict[str, list[float]] = defaultdict(list)
        for trace in traces:
            by_model[trace.model_id].append(trace.total_cost)
        if not by_model:
            return []

        model, costs = max(by_model.items(), key=lambda item: mean(item[1]))
        if mean(costs) <= EXPENSIVE_MODEL_AVG_COST:
            return []
        return [
            CostOpportunity(
                recommendation=(
                    f"Consider switching from {model} to a more cost-effective alternative"
                ),
                potential_savings=sum(costs) * EXPENSIVE_MODEL_SAVINGS_RATE,
                impact="high",
            )
        ]

    async def get_dashboard_data(self) -> DashboardData:
        """Live snapshot, today's totals and threshold alerts."""
        live = await self.trace_service.get_live_traces()

        now = utc_now()
        today_start, today_end = day_bounds(now.date())
        today = await self._traces_between(today_start, today_end, "load today's traces")

        try:
            recent_count = (
                await self.db.execute(
                    select(func.count())
                    .select_from(Trace)
                    .where(Trace.created_at >= now - LIVE_WINDOW)
                )
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to count recent traces: {e}", exc_info=True)
            recent_count = 0

        scores = [t.quality_score for t in today if t.quality_score]
        top_model = top_counts((t.model_id for t in today), 1)

        alerts = []
        if live["error_rate"] > DASHBOARD_ERROR_RATE_ALERT:
            alerts.append(
                DashboardAlert(
                    type="error",
                    message=f"High error rate: {live['error_rate']:.1f}%",
                    timestamp=now,
                )
            )
        if live["avg_latency"] > DASHBOARD_LATENCY_ALERT_MS:
            alerts.append(
                DashboardAlert(
                    type="warning",
                    message=f"High latency: {live['avg_latency']:.0f}ms",
                    timestamp=now,
                )
            )

        return DashboardData(
            live=DashboardLive(
                active_traces=live["active"],
                avg_latency=live["avg_latency"],
                error_rate=live["error_rate"],
                throughput=recent_count / (LIVE_WINDOW.total_seconds() / 60),
            ),
            today=DashboardToday(
                total_requests=len(today),
                total_cost=sum(t.total_cost for t in today),
                avg_quality=mean(scores),
                top_model=top_model[0][0] if top_model else "none",
            ),
            alerts=alerts,
        )

    async def query_metrics(
        self,
        filters: TraceFilters,
        time_range: str | None = "24h",
        group_by: str | None = None,
        include_hourly: bool = False,
        include_comparison: bool = False,
    ) -> MetricsQueryResponse:
        """Metrics for a preset or explicit time range.

        Explicit ``start_date``/``end_date`` on the filters win over
        ``time_range``. Comparison covers the equally long period right
        before the requested one.
        """
        if filters.start_date and filters.end_date:
            start, end = ensure_utc(filters.start_date), ensure_utc(filters.end_date)
        else:
            end = utc_now()
            start = end - TIME_RANGES[time_range or "24h"]
        filters = filters.model_copy(update={"start_date": start, "end_date": end})

        metrics = await self.trace_service.get_trace_metrics(filters)
        traces = (await self._traces_between(start, end, "query metrics", filters))[
            :METRICS_QUERY_TRACE_LIMIT
        ]

        response = MetricsQueryResponse(
            start=start,
            end=end,
            time_range=time_range,
            metrics=metrics,
            breakdown=breakdown(traces),
            trends=self._half_trends(traces, start, end),
            data_points=len(traces),
        )

        if group_by:
            keys = {
                "model": lambda t: t.model_id,
                "source": lambda t: t.source,
                "user": lambda t: t.user_id,
                "hour": hour_key,
                "day": day_key,
            }
            response.groups = {
                key: breakdown(group) for key, group in bucket_by(traces, keys[group_by])
            }

        if include_hourly:
            response.hourly = [
                HourlyBucket(
                    hour=hour,
                    requests=len(group),
                    avg_latency=mean([t.duration_ms for t in group if t.duration_ms]),
                    error_rate=percentage(
                        sum(1 for t in group if t.status == TraceStatus.ERROR.value), len(group)
                    ),
                    cost=sum(t.total_cost for t in group),
                )
                for hour, group in bucket_by(traces, hour_key)
            ]

        if include_comparison:
            previous_filters = filters.model_copy(
                update={"start_date": start - (end - start), "end_date": start}
            )
            previous = await self.trace_service.get_trace_metrics(previous_filters)
            response.comparison = MetricsComparison(
                previous=previous,
                change={
                    name: percentage(getattr(metrics, name) - getattr(previous, name), getattr(previous, name))
                    for name in ("total_traces", "average_duration", "error_rate", "total_cost")
                },
                trends={
                    name: classify_change(getattr(previous, name), getattr(metrics, name))
                    for name in ("total_traces", "average_duration", "error_rate", "total_cost")
                },
            )

        return response

    @staticmethod
    def _half_trends(traces: list[Any], start: datetime, end: datetime) -> dict[str, str]:
        """Older half vs recent half of the traces, in creation order.

        Throughput compares request counts in the two halves of the time window.
        """
        if len(traces) < 2:
            return {"throughput": "stable", "latency": "stable", "error_rate": "stable", "cost": "stable"}

        middle = len(traces) // 2
        first, second = traces[:middle], traces[middle:]
        midpoint = start + (end - start) / 2

        def error_share(group: list[Any]) -> float:
            return sum(1 for t in group if t.status == TraceStatus.ERROR.value) / len(group)

        return {
            "throughput": classify_change(
                sum(1 for t in traces if ensure_utc(t.created_at) < midpoint),
                sum(1 for t in traces if ensure_utc(t.created_at) >= midpoint),
            ),
            "latency": classify_change(
                mean([t.duration_ms or 0 for t in first]), mean([t.duration_ms or 0 for t in second])
            ),
            "error_rate": classify_change(error_share(first), error_share(second)),
            "cost": classify_change(
                mean([t.total_cost for t in first]), mean([t.total_cost for t in second])
            ),
        }
