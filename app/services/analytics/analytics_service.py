"""Analytics service - read side over the rollup tables."""

import logging
import math
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    CostAnalysisSummary,
    ModelUsageStatistics,
    UsageAnalyticsDaily,
    UserActivityMetrics,
)
from app.schemas.analytics import (
    CostAnalysis,
    CostSuggestion,
    DailyCost,
    ForecastPoint,
    ModelComparison,
    PredictiveAnalytics,
    SeriesPoint,
    UsageMetrics,
    UsagePatterns,
    UserAnalytics,
)
from app.services.analytics.trends import classify_change, mean
from app.services.tracing import AnalyticsQueryError
from app.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Cost suggestion heuristics
DOMINANT_MODEL_SHARE = 0.5
DOMINANT_MODEL_SAVINGS = 0.3
TOP_USER_SHARE = 0.2
TOP_USER_SAVINGS = 0.2
QUOTA_MONTHLY_THRESHOLD = 1000.0
QUOTA_SAVINGS = 0.15

# User activity compares the first and last week with a wider band
ACTIVITY_TREND_BAND = 0.2
ACTIVITY_WINDOW_DAYS = 7

# Predictive analytics
HISTORY_DAYS = 90
MIN_FORECAST_POINTS = 7
MOVING_AVERAGE_DAYS = 14
MIN_TREND_POINTS = 14
MIN_FORECAST_CONFIDENCE = 0.5
GROWTH_INSIGHT_FACTOR = 1.5


def performance_score(avg_response_time: float, avg_tokens_per_second: float, success_rate: float) -> float:
    """0-100 score: 40% success rate, 30% response time, 30% throughput.

    100ms response time scores 100 and 50 tokens/s scores 100.
    """
    response_score = max(0.0, 100 - avg_response_time / 100)
    throughput_score = min(100.0, avg_tokens_per_second * 2)
    return success_rate * 0.4 + response_score * 0.3 + throughput_score * 0.3


def forecast_series(history: list[SeriesPoint], days: int, digits: int = 0) -> list[ForecastPoint]:
    """Moving average of the last 14 points plus their half-over-half daily trend."""
    if len(history) < MIN_FORECAST_POINTS:
        return []

    recent = [p.value for p in history[-MOVING_AVERAGE_DAYS:]]
    average = mean(recent)
    half = MOVING_AVERAGE_DAYS // 2
    first, second = recent[:half], recent[half:]
    daily_trend = (mean(second) - mean(first)) / half if second else 0.0

    last_date = history[-1].date
    return [
        ForecastPoint(
            date=last_date + timedelta(days=i),
            value=round(max(0.0, average + daily_trend * i), digits),
            confidence=max(MIN_FORECAST_CONFIDENCE, 1 - (i / days) * 0.5),
        )
        for i in range(1, days + 1)
    ]


def series_trend(history: list[SeriesPoint]) -> str:
    """First week against last week; needs two weeks of points."""
    if len(history) < MIN_TREND_POINTS:
        return "stable"
    return classify_change(
        mean([p.value for p in history[:7]]), mean([p.value for p in history[-7:]])
    )


class AnalyticsService:
    """Usage, model, cost, user and predictive analytics from rollups.

    Args:
        db: Database session
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _fetch(self, query: Select, what: str) -> list[Any]:
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Failed to {what}: {e}", exc_info=True)
            raise AnalyticsQueryError(f"Failed to {what}: {e}") from e
        return list(result.scalars().all())

    async def get_usage_metrics(
        self,
        start: datetime,
        end: datetime,
        user_id: str | None = None,
        model_id: str | None = None,
        source: str | None = None,
    ) -> UsageMetrics:
        """Totals and request-weighted averages from the daily usage rollup."""
        query = (
            select(UsageAnalyticsDaily)
            .where(UsageAnalyticsDaily.date >= ensure_utc(start).date())
            .where(UsageAnalyticsDaily.date <= ensure_utc(end).date())
        )
        if user_id:
            query = query.where(UsageAnalyticsDaily.user_id == user_id)
        if model_id:
            query = query.where(UsageAnalyticsDaily.model_id == model_id)
        if source:
            query = query.where(UsageAnalyticsDaily.source == source)
        rows = await self._fetch(query, "get usage metrics")

        total_requests = sum(r.total_requests for r in rows)
        failed = sum(r.failed_requests for r in rows)
        weighted_duration = sum((r.avg_duration_ms or 0) * r.total_requests for r in rows)
        weighted_tps = sum((r.avg_tokens_per_second or 0) * r.total_requests for r in rows)

        return UsageMetrics(
            total_requests=total_requests,
            successful_requests=sum(r.successful_requests for r in rows),
            failed_requests=failed,
            total_tokens=sum(r.total_tokens for r in rows),
            total_cost=sum(r.total_cost for r in rows),
            avg_response_time=weighted_duration / total_requests if total_requests else 0.0,
            avg_tokens_per_second=weighted_tps / total_requests if total_requests else 0.0,
            unique_users=len({r.user_id for r in rows}),
            error_rate=failed / total_requests * 100 if total_requests else 0.0,
        )

    async def compare_models(self, start: datetime, end: datetime) -> list[ModelComparison]:
        """Per-model comparison from daily model statistics, best performer first."""
        rows = await self._fetch(
            select(ModelUsageStatistics)
            .where(ModelUsageStatistics.period_type == "day")
            .where(ModelUsageStatistics.period_start >= ensure_utc(start))
            .where(ModelUsageStatistics.period_end <= ensure_utc(end)),
            "compare models",
        )

        by_model: dict[str, list[ModelUsageStatistics]] = defaultdict(list)
        for row in rows:
            by_model[row.model_id].append(row)

        comparisons = []
        for model_id, stats in by_model.items():
            total_requests = sum(s.total_requests for s in stats)
            total_cost = sum(s.total_cost for s in stats)
            total_tokens = sum(s.total_tokens for s in stats)
            success_rate = mean([s.success_rate or 0 for s in stats])
            response_time = mean([s.avg_response_time_ms or 0 for s in stats])
            tokens_per_second = mean([s.avg_tokens_per_second or 0 for s in stats])

            cost_efficiency = total_cost / total_tokens if total_tokens > 0 else 0.0
            score = performance_score(response_time, tokens_per_second, success_rate)

            if score > 80 and cost_efficiency < 0.001:
                recommendation = "Excellent choice for production"
            elif score > 60 and cost_efficiency < 0.005:
                recommendation = "Good balance of performance and cost"
            elif cost_efficiency > 0.01:
                recommendation = "High cost - use for premium features only"
            else:
                recommendation = "Consider for specific use cases"

            comparisons.append(
                ModelComparison(
                    model_id=model_id,
                    metrics=UsageMetrics(
                        total_requests=total_requests,
                        successful_requests=round(total_requests * success_rate / 100),
                        failed_requests=round(total_requests * (100 - success_rate) / 100),
                        total_tokens=total_tokens,
                        total_cost=total_cost,
                        avg_response_time=response_time,
                        avg_tokens_per_second=tokens_per_second,
                        unique_users=max(s.unique_users for s in stats),
                        error_rate=100 - success_rate,
                    ),
                    cost_efficiency=cost_efficiency,
                    performance_score=score,
                    quality_score=mean([s.avg_quality_score or 0 for s in stats]),
                    recommendation=recommendation,
                )
            )

        return sorted(comparisons, key=lambda c: c.performance_score, reverse=True)

    async def analyze_costs(self, start: datetime, end: datetime) -> CostAnalysis:
        """Spend by model and user from daily cost summaries, with a 30-day projection."""
        start_day, end_day = ensure_utc(start).date(), ensure_utc(end).date()
        rows = await self._fetch(
            select(CostAnalysisSummary)
            .where(CostAnalysisSummary.period_type == "day")
            .where(CostAnalysisSummary.period_start >= start_day)
            .where(CostAnalysisSummary.period_end <= end_day + timedelta(days=1))
            .order_by(CostAnalysisSummary.period_start.asc()),
            "analyze costs",
        )

        total_spend = sum(r.total_cost for r in rows)
        days = max(1, math.ceil((ensure_utc(end) - ensure_utc(start)).total_seconds() / 86400))
        projected_monthly = total_spend / days * 30

        cost_by_model: dict[str, float] = defaultdict(float)
        cost_by_user: dict[str, float] = defaultdict(float)
        for row in rows:
            for model_id, cost in (row.model_costs or {}).items():
                cost_by_model[model_id] += float(cost)
            for user_id, cost in (row.user_costs or {}).items():
                cost_by_user[user_id] += float(cost)

        return CostAnalysis(
            total_spend=total_spend,
            projected_monthly_spend=projected_monthly,
            cost_by_model=dict(cost_by_model),
            cost_by_user=dict(cost_by_user),
            cost_trends=[DailyCost(date=r.period_start, cost=r.total_cost) for r in rows],
            optimization_opportunities=self._cost_suggestions(
                cost_by_model, cost_by_user, total_spend, projected_monthly
            ),
        )

    @staticmethod
    def _cost_suggestions(
        cost_by_model: dict[str, float],
        cost_by_user: dict[str, float],
        total_spend: float,
        projected_monthly: float,
    ) -> list[CostSuggestion]:
        suggestions = []

        if cost_by_model:
            model_id, cost = max(cost_by_model.items(), key=lambda i: i[1])
            if cost > total_spend * DOMINANT_MODEL_SHARE:
                suggestions.append(
                    CostSuggestion(
                        suggestion=(
                            f"Consider using cheaper alternatives to {model_id} for non-critical tasks"
                        ),
                        potential_savings=cost * DOMINANT_MODEL_SAVINGS,
                        impact="high",
                    )
                )

        if cost_by_user:
            _, cost = max(cost_by_user.items(), key=lambda i: i[1])
            if cost > total_spend * TOP_USER_SHARE:
                suggestions.append(
                    CostSuggestion(
                        suggestion="Review usage patterns for top user to optimize their workflows",
                        potential_savings=cost * TOP_USER_SAVINGS,
                        impact="medium",
                    )
                )

        if projected_monthly > QUOTA_MONTHLY_THRESHOLD:
            suggestions.append(
                CostSuggestion(
                    suggestion="Implement usage quotas and monitoring to control costs",
                    potential_savings=projected_monthly * QUOTA_SAVINGS,
                    impact="high",
                )
            )

        return suggestions

    async def get_user_analytics(self, user_id: str, start: datetime, end: datetime) -> UserAnalytics:
        """Activity summary for one user from daily activity rows."""
        rows = await self._fetch(
            select(UserActivityMetrics)
            .where(UserActivityMetrics.user_id == user_id)
            .where(UserActivityMetrics.date >= ensure_utc(start).date())
            .where(UserActivityMetrics.date <= ensure_utc(end).date())
            .order_by(UserActivityMetrics.date.asc()),
            "get user analytics",
        )

        favorite_models = Counter(r.most_used_model for r in rows if r.most_used_model)
        peak_hours = Counter(r.peak_usage_hour for r in rows if r.peak_usage_hour is not None)

        activity_trend = "stable"
        if len(rows) >= ACTIVITY_WINDOW_DAYS:
            activity_trend = classify_change(
                sum(r.total_requests for r in rows[:ACTIVITY_WINDOW_DAYS]),
                sum(r.total_requests for r in rows[-ACTIVITY_WINDOW_DAYS:]),
                band=ACTIVITY_TREND_BAND,
            )

        return UserAnalytics(
            user_id=user_id,
            total_requests=sum(r.total_requests for r in rows),
            total_cost=sum(r.total_cost for r in rows),
            favorite_models=[model for model, _ in favorite_models.most_common(3)],
            usage_patterns=UsagePatterns(
                peak_hours=[hour for hour, _ in peak_hours.most_common(3)],
                avg_session_duration=mean([r.avg_session_duration_minutes or 0 for r in rows]),
                requests_per_session=mean([r.requests_per_session or 0 for r in rows]),
            ),
            activity_trend=activity_trend,
        )

    async def get_predictive_analytics(
        self, metric: str = "usage", forecast_days: int = 30
    ) -> PredictiveAnalytics:
        """Forecast a daily series from the last 90 days of rollups.

        usage sums daily requests, cost reads daily cost summaries and
        performance is the request-weighted daily average duration.

        Raises:
            ValueError: If metric is not usage, cost or performance
        """
        since = (utc_now() - timedelta(days=HISTORY_DAYS)).date()
        history = await self._history(metric, since)
        forecast = forecast_series(history, forecast_days, digits=0 if metric == "usage" else 4)
        trend = series_trend(history)

        insights = []
        if trend == "increasing":
            insights.append(f"{metric} is showing an upward trend - consider capacity planning")
        elif trend == "decreasing":
            insights.append(f"{metric} is declining - investigate potential causes")
        if forecast:
            current = mean([p.value for p in history[-7:]])
            if mean([p.value for p in forecast]) > current * GROWTH_INSIGHT_FACTOR:
                insights.append(
                    f"Significant growth expected in {metric} - prepare for increased demand"
                )

        return PredictiveAnalytics(
            metric=metric,
            historical=history,
            forecast=forecast,
            trend=trend,
            insights=insights,
        )

    async def _history(self, metric: str, since: date) -> list[SeriesPoint]:
        if metric == "cost":
            rows = await self._fetch(
                select(CostAnalysisSummary)
                .where(CostAnalysisSummary.period_type == "day")
                .where(CostAnalysisSummary.period_start >= since)
                .order_by(CostAnalysisSummary.period_start.asc()),
                "load cost history",
            )
            return [SeriesPoint(date=r.period_start, value=r.total_cost) for r in rows]

        if metric not in ("usage", "performance"):
            raise ValueError(f"Unsupported metric: {metric}")

        rows = await self._fetch(
            select(UsageAnalyticsDaily)
            .where(UsageAnalyticsDaily.date >= since)
            .order_by(UsageAnalyticsDaily.date.asc()),
            f"load {metric} history",
        )
        requests: dict[date, int] = defaultdict(int)
        weighted_duration: dict[date, float] = defaultdict(float)
        for row in rows:
            requests[row.date] += row.total_requests
            weighted_duration[row.date] += (row.avg_duration_ms or 0) * row.total_requests

        if metric == "usage":
            return [SeriesPoint(date=day, value=count) for day, count in sorted(requests.items())]
        return [
            SeriesPoint(date=day, value=weighted_duration[day] / count if count else 0.0)
            for day, count in sorted(requests.items())
        ]
