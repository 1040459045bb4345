"""Cost optimizer - savings recommendations, forecasts, efficiency ratings and alerts.

The savings rates and confidence values are business heuristics rather than
measurements. Each one is a module constant that can be overridden per
instance through the constructor.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Trace
from app.schemas.analytics import (
    CostAlert,
    CostAnalysis,
    CostForecast,
    CostOptimizationRecommendation,
    ForecastFactor,
    ModelComparison,
    ModelCostEfficiency,
    RecommendationDetails,
)
from app.services.analytics.analytics_service import AnalyticsService
from app.services.analytics.trends import classify_change, mean, variance
from app.services.tracing import AnalyticsQueryError
from app.utils.time import ensure_utc, start_of_day, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MIN_SAVINGS = 50.0

HIGH_IMPACT_SAVINGS = 500.0
MEDIUM_IMPACT_SAVINGS = 200.0

# Model switch
SWITCH_CANDIDATES = 3
SWITCH_QUALITY_RATIO = 0.9
SWITCH_PERFORMANCE_RATIO = 0.8
SWITCH_CONFIDENCE = 0.8

# Usage pattern
HEAVY_USER_SHARE = 0.1
USAGE_PATTERN_SAVINGS = 0.2
USAGE_PATTERN_CONFIDENCE = 0.6

# Batching
PATTERN_SAMPLE_LIMIT = 1000
BATCH_MIN_OCCURRENCES = 10
BATCH_SAVINGS = 0.15
BATCH_CONFIDENCE = 0.5
PATTERN_STOP_WORDS = frozenset({"the", "and", "for", "are", "with"})
PATTERN_WORDS = 3

# Caching
CACHE_CONFIDENCE = 0.85

# Forecast
FORECAST_PERIODS = {"weekly": 7, "monthly": 30, "quarterly": 90}
TREND_WINDOW_DAYS = 7
MIN_FORECAST_CONFIDENCE = 0.3
MAX_FORECAST_CONFIDENCE = 0.95
ASSUMED_USAGE_GROWTH = 15.0

# Alerts
DAILY_BUDGET = 100.0
SPIKE_MULTIPLIER = 2.0
MODEL_CONCENTRATION_SHARE = 0.5


def impact_for(savings: float) -> str:
    if savings > HIGH_IMPACT_SAVINGS:
        return "high"
    if savings > MEDIUM_IMPACT_SAVINGS:
        return "medium"
    return "low"


def extract_prompt_pattern(prompt: str) -> str:
    """Crude prompt signature: the three longest significant words, in prompt order."""
    words = [
        word
        for word in prompt.lower().split()
        if len(word) > 3 and word not in PATTERN_STOP_WORDS
    ]
    longest = sorted(range(len(words)), key=lambda i: len(words[i]), reverse=True)[:PATTERN_WORDS]
    return "-".join(words[i] for i in sorted(longest))


class CostOptimizer:
    """Finds savings opportunities in recent spend.

    Args:
        db: Database session
        analytics: Rollup reader (defaults to one on the same session)
        Remaining keyword arguments override the module heuristics.
    """

    def __init__(
        self,
        db: AsyncSession,
        analytics: AnalyticsService | None = None,
        daily_budget: float = DAILY_BUDGET,
        spike_multiplier: float = SPIKE_MULTIPLIER,
        model_concentration_share: float = MODEL_CONCENTRATION_SHARE,
        heavy_user_share: float = HEAVY_USER_SHARE,
        usage_pattern_savings: float = USAGE_PATTERN_SAVINGS,
        batch_savings: float = BATCH_SAVINGS,
        batch_min_occurrences: int = BATCH_MIN_OCCURRENCES,
        switch_confidence: float = SWITCH_CONFIDENCE,
        usage_pattern_confidence: float = USAGE_PATTERN_CONFIDENCE,
        batch_confidence: float = BATCH_CONFIDENCE,
        cache_confidence: float = CACHE_CONFIDENCE,
    ):
        self.db = db
        self.analytics = analytics or AnalyticsService(db)
        self.daily_budget = daily_budget
        self.spike_multiplier = spike_multiplier
        self.model_concentration_share = model_concentration_share
        self.heavy_user_share = heavy_user_share
        self.usage_pattern_savings = usage_pattern_savings
        self.batch_savings = batch_savings
        self.batch_min_occurrences = batch_min_occurrences
        self.switch_confidence = switch_confidence
        self.usage_pattern_confidence = usage_pattern_confidence
        self.batch_confidence = batch_confidence
        self.cache_confidence = cache_confidence

    async def generate_recommendations(
        self, start: datetime, end: datetime, min_savings: float = DEFAULT_MIN_SAVINGS
    ) -> list[CostOptimizationRecommendation]:
        """Run every analysis and return recommendations, largest savings first.

        Args:
            start: Start of the analyzed window
            end: End of the analyzed window
            min_savings: Drop recommendations saving less than this (USD)

        Returns:
            Recommendations sorted by potential savings descending
        """
        costs = await self.analytics.analyze_costs(start, end)
        models = await self.analytics.compare_models(start, end)
        traces = await self._sample_traces(start, end)

        recommendations = [
            *self.analyze_model_switch_opportunities(models),
            *self.analyze_usage_patterns(costs),
            *self.analyze_batch_opportunities(traces),
            *self.analyze_caching_opportunities(traces),
        ]
        kept = [r for r in recommendations if r.potential_savings >= min_savings]
        logger.info(
            f"Generated {len(kept)} cost recommendations "
            f"({len(recommendations) - len(kept)} below ${min_savings:.2f})"
        )
        return sorted(kept, key=lambda r: r.potential_savings, reverse=True)

    async def _sample_traces(self, start: datetime, end: datetime) -> list[Any]:
        try:
            result = await self.db.execute(
                select(Trace.model_id, Trace.prompt_content, Trace.cost_calculation)
                .where(Trace.created_at >= ensure_utc(start))
                .where(Trace.created_at <= ensure_utc(end))
                .limit(PATTERN_SAMPLE_LIMIT)
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to sample traces: {e}", exc_info=True)
            raise AnalyticsQueryError(f"Failed to sample traces: {e}") from e
        return list(result.all())

    @staticmethod
    def _row_cost(row: Any) -> float:
        try:
            return float((row.cost_calculation or {}).get("total_cost") or 0)
        except (TypeError, ValueError):
            return 0.0

    def analyze_model_switch_opportunities(
        self, models: list[ModelComparison]
    ) -> list[CostOptimizationRecommendation]:
        """Pair the priciest models with a cheap one of similar quality and performance."""
        by_cost = sorted(models, key=lambda m: m.cost_efficiency, reverse=True)
        expensive = by_cost[:SWITCH_CANDIDATES]
        cheapest = list(reversed(by_cost))[:SWITCH_CANDIDATES]

        recommendations = []
        for model in expensive:
            alternative = next(
                (
                    cheap
                    for cheap in cheapest
                    if cheap.model_id != model.model_id
                    and cheap.cost_efficiency < model.cost_efficiency
                    and cheap.quality_score >= model.quality_score * SWITCH_QUALITY_RATIO
                    and cheap.performance_score >= model.performance_score * SWITCH_PERFORMANCE_RATIO
                ),
                None,
            )
            if alternative is None:
                continue

            savings = (model.cost_efficiency - alternative.cost_efficiency) * model.metrics.total_tokens
            recommendations.append(
                CostOptimizationRecommendation(
                    id=f"model-switch-{model.model_id}",
                    type="model_switch",
                    title=f"Switch from {model.model_id} to {alternative.model_id}",
                    description="Replace expensive model with more cost-efficient alternative",
                    impact=impact_for(savings),
                    potential_savings=savings,
                    implementation_effort="easy",
                    confidence=self.switch_confidence,
                    details=RecommendationDetails(
                        current_cost=model.metrics.total_cost,
                        optimized_cost=model.metrics.total_cost - savings,
                        affected_requests=model.metrics.total_requests,
                        timeframe="immediate",
                    ),
                    action_items=[
                        "Test alternative model with sample requests",
                        "Update application configuration",
                        "Monitor quality metrics after switch",
                    ],
                )
            )
        return recommendations

    def analyze_usage_patterns(self, costs: CostAnalysis) -> list[CostOptimizationRecommendation]:
        """Flag the biggest spender when they account for a large share of spend."""
        heavy = sorted(
            (
                (user_id, cost)
                for user_id, cost in costs.cost_by_user.items()
                if cost > costs.total_spend * self.heavy_user_share
            ),
            key=lambda i: i[1],
            reverse=True,
        )
        if not heavy:
            return []

        user_id, cost = heavy[0]
        savings = cost * self.usage_pattern_savings
        return [
            CostOptimizationRecommendation(
                id=f"usage-pattern-{user_id}",
                type="usage_pattern",
                title="Optimize high-volume user workflows",
                description="Top user could benefit from usage optimization strategies",
                impact=impact_for(savings),
                potential_savings=savings,
                implementation_effort="moderate",
                confidence=self.usage_pattern_confidence,
                details=RecommendationDetails(
                    current_cost=cost,
                    optimized_cost=cost - savings,
                    affected_requests=0,
                    timeframe="1-2 weeks",
                ),
                action_items=[
                    "Analyze user request patterns",
                    "Implement request deduplication",
                    "Add caching for repeated queries",
                    "Provide usage guidelines",
                ],
            )
        ]

    def analyze_batch_opportunities(self, traces: list[Any]) -> list[CostOptimizationRecommendation]:
        """Group prompts by signature and suggest batching for frequent ones."""
        patterns: dict[str, list[Any]] = defaultdict(list)
        for row in traces:
            pattern = extract_prompt_pattern(row.prompt_content or "")
            if pattern:
                patterns[pattern].append(row)

        recommendations = []
        for pattern, rows in patterns.items():
            if len(rows) < self.batch_min_occurrences:
                continue
            total_cost = sum(self._row_cost(r) for r in rows)
            savings = total_cost * self.batch_savings
            recommendations.append(
                CostOptimizationRecommendation(
                    id=f"batch-{pattern}",
                    type="batch_optimization",
                    title="Implement request batching",
                    description="Batch similar requests to reduce API overhead",
                    impact=impact_for(savings),
                    potential_savings=savings,
                    implementation_effort="complex",
                    confidence=self.batch_confidence,
                    details=RecommendationDetails(
                        current_cost=total_cost,
                        optimized_cost=total_cost - savings,
                        affected_requests=len(rows),
                        timeframe="2-4 weeks",
                    ),
                    action_items=[
                        "Implement batch processing logic",
                        "Update API endpoints to support batching",
                        "Modify client code to use batch requests",
                        "Monitor batch performance",
                    ],
                )
            )
        return recommendations

    def analyze_caching_opportunities(self, traces: list[Any]) -> list[CostOptimizationRecommendation]:
        """Cost of exact repeats of (model, prompt) beyond their first occurrence."""
        seen: set[tuple[str, str]] = set()
        cacheable_cost = 0.0
        cacheable_requests = 0
        for row in traces:
            key = (row.model_id, row.prompt_content)
            if key in seen:
                cacheable_cost += self._row_cost(row)
                cacheable_requests += 1
            else:
                seen.add(key)

        if cacheable_requests == 0:
            return []
        return [
            CostOptimizationRecommendation(
                id="caching-strategy",
                type="cache_strategy",
                title="Implement intelligent caching",
                description="Cache repeated requests to eliminate redundant API calls",
                impact=impact_for(cacheable_cost),
                potential_savings=cacheable_cost,
                implementation_effort="moderate",
                confidence=self.cache_confidence,
                details=RecommendationDetails(
                    current_cost=cacheable_cost,
                    optimized_cost=0.0,
                    affected_requests=cacheable_requests,
                    timeframe="1-2 weeks",
                ),
                action_items=[
                    "Implement Redis-based response caching",
                    "Add cache keys based on prompt and model",
                    "Set appropriate cache TTL values",
                    "Monitor cache hit rates",
                ],
            )
        ]

    async def generate_cost_forecast(self, period: str = "monthly", historical_days: int = 30) -> CostForecast:
        """Project spend over the next week, month or quarter.

        Raises:
            ValueError: If period is not weekly, monthly or quarterly
        """
        if period not in FORECAST_PERIODS:
            raise ValueError(f"Unsupported forecast period: {period}")
        forecast_days = FORECAST_PERIODS[period]

        end = utc_now()
        costs = await self.analytics.analyze_costs(end - timedelta(days=historical_days), end)
        daily_average = costs.total_spend / historical_days
        daily = [point.cost for point in costs.cost_trends]

        multiplier = 1.0
        trend = "stable"
        if len(daily) >= TREND_WINDOW_DAYS:
            older = mean(daily[:TREND_WINDOW_DAYS])
            recent = mean(daily[-TREND_WINDOW_DAYS:])
            trend = classify_change(older, recent)
            if older > 0:
                multiplier = recent / older

        if daily_average > 0:
            confidence = 1 - variance(daily) / daily_average**2
        else:
            confidence = MIN_FORECAST_CONFIDENCE
        confidence = max(MIN_FORECAST_CONFIDENCE, min(MAX_FORECAST_CONFIDENCE, confidence))

        if trend == "increasing":
            explanation = "Costs are increasing based on recent usage patterns"
        elif trend == "decreasing":
            explanation = "Costs are decreasing based on recent usage patterns"
        else:
            explanation = "Costs remain stable based on recent patterns"

        current = daily_average * forecast_days
        return CostForecast(
            period=period,
            current=current,
            forecasted=current * multiplier,
            trend=trend,
            confidence=confidence,
            factors=[
                ForecastFactor(
                    factor="Historical trend",
                    impact=(multiplier - 1) * 100,
                    explanation=explanation,
                ),
                ForecastFactor(
                    factor="Usage growth",
                    impact=ASSUMED_USAGE_GROWTH,
                    explanation="Expected organic growth in platform usage",
                ),
            ],
        )

    async def analyze_model_efficiency(self, start: datetime, end: datetime) -> list[ModelCostEfficiency]:
        """Rate each model's cost efficiency against its quality."""
        results = []
        for model in await self.analytics.compare_models(start, end):
            cost_per_token = model.cost_efficiency
            quality = model.quality_score
            recommendations = []

            if cost_per_token < 0.001 and quality > 0.8:
                rating = "excellent"
                recommendations.append("Ideal for production workloads")
            elif cost_per_token < 0.005 and quality > 0.7:
                rating = "good"
                recommendations.append("Good balance of cost and quality")
            elif cost_per_token < 0.01:
                rating = "average"
                recommendations.append("Consider for specialized use cases only")
            else:
                rating = "poor"
                recommendations.append("Review usage - may be too expensive for current workload")

            if model.metrics.error_rate > 10:
                recommendations.append("High error rate - investigate integration issues")
            if model.metrics.avg_response_time > 5000:
                recommendations.append("Slow response times - consider faster alternatives")
            if model.performance_score < 50:
                recommendations.append("Low performance score - reassess model suitability")

            requests = model.metrics.total_requests
            results.append(
                ModelCostEfficiency(
                    model_id=model.model_id,
                    cost_per_token=cost_per_token,
                    cost_per_request=model.metrics.total_cost / requests if requests else 0.0,
                    quality_score=quality,
                    performance_score=model.performance_score,
                    efficiency_rating=rating,
                    recommendations=recommendations,
                )
            )
        return results

    async def get_cost_alerts(self) -> list[CostAlert]:
        """Budget, spike and model-concentration alerts for yesterday's spend."""
        now = utc_now()
        today = start_of_day(now.date())
        yesterday = today - timedelta(days=1)
        day_end = today - timedelta(seconds=1)

        spend = await self.analytics.analyze_costs(yesterday, day_end)
        week = await self.analytics.analyze_costs(
            yesterday - timedelta(days=7), yesterday - timedelta(seconds=1)
        )

        alerts = []
        if spend.total_spend > self.daily_budget:
            alerts.append(
                CostAlert(
                    type="budget_exceeded",
                    severity="high",
                    message=(
                        f"Daily budget exceeded: ${spend.total_spend:.2f} / ${self.daily_budget:.2f}"
                    ),
                    value=spend.total_spend,
                    threshold=self.daily_budget,
                    timestamp=now,
                )
            )

        average = week.total_spend / 7
        if average > 0 and spend.total_spend > average * self.spike_multiplier:
            alerts.append(
                CostAlert(
                    type="unusual_spike",
                    severity="medium",
                    message=(
                        f"Unusual cost spike detected: {spend.total_spend / average:.1f}x above average"
                    ),
                    value=spend.total_spend,
                    threshold=average * self.spike_multiplier,
                    timestamp=now,
                )
            )

        threshold = spend.total_spend * self.model_concentration_share
        for model_id, cost in spend.cost_by_model.items():
            if spend.total_spend > 0 and cost > threshold:
                alerts.append(
                    CostAlert(
                        type="model_expensive",
                        severity="low",
                        message=(
                            f"{model_id} accounts for {cost / spend.total_spend * 100:.1f}% "
                            "of the day's costs"
                        ),
                        value=cost,
                        threshold=threshold,
                        timestamp=now,
                    )
                )

        return alerts
