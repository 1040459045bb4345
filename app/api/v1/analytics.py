"""Analytics API endpoints."""

import logging
from datetime import datetime, timedelta
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import (
    CurrentUser,
    get_aggregation_service,
    get_analytics_service,
    get_cost_optimizer,
    get_current_user,
    get_trace_analytics,
    require_admin,
    resolve_user_scope,
)
from app.schemas.analytics import (
    AggregateRequest,
    AggregationRunResult,
    CostAlert,
    CostAnalysis,
    CostForecast,
    CostOptimizationRecommendation,
    DashboardData,
    ModelComparison,
    ModelCostEfficiency,
    ModelPerformanceAnalysis,
    PerformanceInsights,
    PerformanceReport,
    PredictiveAnalytics,
    UsageMetrics,
    UsageReport,
    UserAnalytics,
)
from app.schemas.tracing import SourceValue, TraceFilters
from app.services.analytics import (
    AggregationService,
    AnalyticsService,
    CostOptimizer,
    TraceAnalytics,
)
from app.services.tracing import AnalyticsQueryError, TracePersistenceError
from app.utils.time import ensure_utc, start_of_day, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/analytics",
    tags=["analytics"],
    dependencies=[Depends(get_current_user)],
)

QUERY_FAILURES = (AnalyticsQueryError, TracePersistenceError)


def _window(
    start_date: datetime | None, end_date: datetime | None, default_days: int
) -> tuple[datetime, datetime]:
    """Resolve query bounds to aware UTC datetimes. Naive input is read as UTC."""
    end = ensure_utc(end_date) or utc_now()
    start = ensure_utc(start_date) or end - timedelta(days=default_days)
    if start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must be before end_date",
        )
    return start, end


def _failed(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# Trace analytics
@router.get("/performance", response_model=PerformanceReport)
async def get_performance(
    user: Annotated[CurrentUser, Depends(get_current_user)],
    analytics: Annotated[TraceAnalytics, Depends(get_trace_analytics)],
    user_id: str | None = None,
    model: str | None = None,
    source: SourceValue | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> PerformanceReport:
    """Trace metrics with a letter grade, recommendations and trends."""
    filters = TraceFilters(
        user_id=resolve_user_scope(user, user_id),
        model=model,
        source=source,
        start_date=start_date,
        end_date=end_date,
    )
    try:
        return await analytics.get_performance_metrics(filters)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/models", response_model=list[ModelPerformanceAnalysis])
async def get_model_performance(
    analytics: Annotated[TraceAnalytics, Depends(get_trace_analytics)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[ModelPerformanceAnalysis]:
    """Per-model success, speed and cost efficiency over raw traces."""
    start, end = _window(start_date, end_date, 7)
    try:
        return await analytics.analyze_model_performance(start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/models/compare", response_model=list[ModelComparison])
async def compare_models(
    service: Annotated[AnalyticsService, Depends(get_analytics_service)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[ModelComparison]:
    """Model comparison from the daily model statistics rollup."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await service.compare_models(start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/usage", response_model=UsageReport)
async def get_usage_report(
    analytics: Annotated[TraceAnalytics, Depends(get_trace_analytics)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> UsageReport:
    """Usage totals, model shares, daily cost trend and error breakdown."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await analytics.generate_usage_report(start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/usage/metrics", response_model=UsageMetrics)
async def get_usage_metrics(
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[AnalyticsService, Depends(get_analytics_service)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    user_id: str | None = None,
    model: str | None = None,
    source: SourceValue | None = None,
) -> UsageMetrics:
    """Usage totals from the daily usage rollup."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await service.get_usage_metrics(
            start,
            end,
            user_id=resolve_user_scope(user, user_id),
            model_id=model,
            source=source,
        )
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/insights", response_model=PerformanceInsights)
async def get_insights(
    analytics: Annotated[TraceAnalytics, Depends(get_trace_analytics)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> PerformanceInsights:
    """Latency and throughput series, cost opportunities and quality insights."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await analytics.get_performance_insights(start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/dashboard", response_model=DashboardData)
async def get_dashboard(
    analytics: Annotated[TraceAnalytics, Depends(get_trace_analytics)],
) -> DashboardData:
    """Live and today's numbers plus threshold alerts."""
    try:
        return await analytics.get_dashboard_data()
    except QUERY_FAILURES as e:
        raise _failed(e)


# Costs
@router.get("/costs", response_model=CostAnalysis)
async def get_costs(
    service: Annotated[AnalyticsService, Depends(get_analytics_service)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> CostAnalysis:
    """Spend by model and user with a monthly projection."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await service.analyze_costs(start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/costs/recommendations", response_model=list[CostOptimizationRecommendation])
async def get_cost_recommendations(
    optimizer: Annotated[CostOptimizer, Depends(get_cost_optimizer)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    min_savings: Annotated[float, Query(ge=0)] = 50.0,
) -> list[CostOptimizationRecommendation]:
    """Savings recommendations, largest first."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await optimizer.generate_recommendations(start, end, min_savings=min_savings)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/costs/forecast", response_model=CostForecast)
async def get_cost_forecast(
    optimizer: Annotated[CostOptimizer, Depends(get_cost_optimizer)],
    period: Literal["weekly", "monthly", "quarterly"] = "monthly",
    historical_days: Annotated[int, Query(ge=7, le=365)] = 30,
) -> CostForecast:
    """Projected spend for the next period."""
    try:
        return await optimizer.generate_cost_forecast(period, historical_days)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/costs/efficiency", response_model=list[ModelCostEfficiency])
async def get_cost_efficiency(
    optimizer: Annotated[CostOptimizer, Depends(get_cost_optimizer)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[ModelCostEfficiency]:
    """Cost efficiency rating per model."""
    start, end = _window(start_date, end_date, 30)
    try:
        return await optimizer.analyze_model_efficiency(start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/costs/alerts", response_model=list[CostAlert])
async def get_cost_alerts(
    optimizer: Annotated[CostOptimizer, Depends(get_cost_optimizer)],
) -> list[CostAlert]:
    """Budget, spike and model-concentration alerts for yesterday."""
    try:
        return await optimizer.get_cost_alerts()
    except QUERY_FAILURES as e:
        raise _failed(e)


# Forecasts and per-user views
@router.get("/predictive", response_model=PredictiveAnalytics)
async def get_predictive(
    service: Annotated[AnalyticsService, Depends(get_analytics_service)],
    metric: Literal["usage", "cost", "performance"] = "usage",
    forecast_days: Annotated[int, Query(ge=1, le=90)] = 30,
) -> PredictiveAnalytics:
    """Moving-average forecast of a daily series."""
    try:
        return await service.get_predictive_analytics(metric, forecast_days)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except QUERY_FAILURES as e:
        raise _failed(e)


@router.get("/users/{user_id}", response_model=UserAnalytics)
async def get_user_analytics(
    user_id: str,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[AnalyticsService, Depends(get_analytics_service)],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> UserAnalytics:
    """Spend, favorite models and usage patterns for one user."""
    resolve_user_scope(user, user_id)
    start, end = _window(start_date, end_date, 30)
    try:
        return await service.get_user_analytics(user_id, start, end)
    except QUERY_FAILURES as e:
        raise _failed(e)


# Admin
@router.post(
    "/aggregate",
    response_model=AggregationRunResult,
    dependencies=[Depends(require_admin)],
)
async def run_aggregation(
    body: AggregateRequest,
    service: Annotated[AggregationService, Depends(get_aggregation_service)],
) -> AggregationRunResult:
    """Run rollups on demand.

    ``day`` runs every pass for the target date; other periods refresh only
    the model statistics (and cost analysis where the period supports it).
    """
    target_date = body.target_date or utc_now().date()
    if body.period_type == "day":
        return AggregationRunResult(**await service.run_aggregations(target_date))

    reference = start_of_day(target_date)
    results = {}
    errors = []
    try:
        results["model_stats"] = await service.aggregate_model_statistics(body.period_type, reference)
        if body.period_type in ("week", "month"):
            results["cost_analysis"] = await service.aggregate_cost_analysis(body.period_type, reference)
    except QUERY_FAILURES as e:
        logger.error(f"On-demand {body.period_type} aggregation failed: {e}", exc_info=True)
        errors.append(str(e))
    return AggregationRunResult(success=not errors, results=results, errors=errors)
