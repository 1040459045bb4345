"""Tests for the rollup passes and the reads over the rollup tables."""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from app.models import (
    CostAnalysisSummary,
    ModelUsageStatistics,
    PromptPerformanceTrend,
    UsageAnalyticsDaily,
    UserActivityMetrics,
)
from app.services.analytics import AggregationService, AnalyticsService
from app.services.analytics.aggregation import quality_distribution
from app.utils.time import utc_now
from tests.factories import at


pytestmark = pytest.mark.asyncio


@pytest.fixture
def day():
    """Midnight three days ago."""
    return (utc_now() - timedelta(days=3)).replace(hour=0, minute=0, second=0, microsecond=0)


@pytest_asyncio.fixture
async def seeded(add_traces, day):
    """One day of mixed traffic from two users on two models."""
    return await add_traces(
        {"created_at": at(day, 9), "user_id": "user-1"},
        {"created_at": at(day, 9, 30), "user_id": "user-1", "model_id": "gpt-4o",
         "source": "api", "status": "error", "error_code": "RATE_LIMIT"},
        {"created_at": at(day, 10), "user_id": "user-1"},
        {"created_at": at(day, 15), "user_id": "user-2", "prompt_id": "p1", "quality_score": 0.8,
         "user_rating": 4},
        # Outside the day
        {"created_at": at(day - timedelta(days=1), 12), "user_id": "user-1"},
    )


async def count_rows(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar()


class TestDailyUsage:
    """Tests for the daily usage rollup."""

    async def test_groups_by_user_model_source(self, db, seeded, day):
        """One row per (user, model, source) for the day."""
        service = AggregationService(db)

        result = await service.aggregate_daily_usage(day.date())

        assert result == {"processed": 3, "inserted": 3, "updated": 0}
        rows = (
            await db.execute(
                select(UsageAnalyticsDaily).where(UsageAnalyticsDaily.user_id == "user-1")
            )
        ).scalars().all()
        by_model = {r.model_id: r for r in rows}
        assert by_model["gpt-4o-mini"].total_requests == 2
        assert by_model["gpt-4o-mini"].total_cost == pytest.approx(0.02)
        assert by_model["gpt-4o"].failed_requests == 1

    async def test_rerun_updates_in_place(self, db, seeded, day):
        """Running the pass twice never duplicates rows."""
        service = AggregationService(db)
        await service.aggregate_daily_usage(day.date())

        result = await service.aggregate_daily_usage(day.date())

        assert result == {"processed": 3, "inserted": 0, "updated": 3}
        assert await count_rows(db, UsageAnalyticsDaily) == 3


class TestModelStatistics:
    """Tests for per-model statistics."""

    async def test_rows_per_model(self, db, seeded, day):
        """Statistics cover the period containing the reference time."""
        service = AggregationService(db)

        result = await service.aggregate_model_statistics("day", at(day, 12))
        await service.aggregate_model_statistics("day", at(day, 12))

        assert result == {"models": 2, "periods": 1}
        assert await count_rows(db, ModelUsageStatistics) == 2
        rows = {r.model_id: r for r in (await db.execute(select(ModelUsageStatistics))).scalars()}
        assert rows["gpt-4o-mini"].total_requests == 3
        assert rows["gpt-4o-mini"].unique_users == 2
        assert rows["gpt-4o-mini"].success_rate == 100
        assert rows["gpt-4o"].error_rate == 100
        assert rows["gpt-4o"].common_errors == ["RATE_LIMIT"]

    async def test_empty_period(self, db, day):
        """A period without traces writes nothing but still counts as one period."""
        result = await AggregationService(db).aggregate_model_statistics("hour", at(day, 3))

        assert result == {"models": 0, "periods": 1}

    async def test_unknown_period_rejected(self, db):
        """Only hour, day, week and month are supported."""
        with pytest.raises(ValueError):
            await AggregationService(db).aggregate_model_statistics("year")

    async def test_quality_distribution_uses_unit_scale(self):
        """Rollup quality buckets sit at 0.9, 0.7 and 0.5."""
        assert quality_distribution([0.95, 0.8, 0.6, 0.2]) == {
            "excellent": 1, "good": 1, "fair": 1, "poor": 1,
        }


class TestDownstreamPasses:
    """Tests for the passes that read the daily usage rollup."""

    async def test_cost_analysis(self, db, seeded, day):
        """Cost summary sums the day with recommendations and a forecast."""
        service = AggregationService(db)
        await service.aggregate_daily_usage(day.date())

        result = await service.aggregate_cost_analysis("day", at(day, 12))

        assert result["total_cost"] == pytest.approx(0.04)
        summary = (await db.execute(select(CostAnalysisSummary))).scalar_one()
        assert summary.model_costs["gpt-4o-mini"] == pytest.approx(0.03)
        assert summary.cost_forecast == pytest.approx(0.044)
        assert summary.top_users[0]["user_id"] == "user-1"
        types = {r["type"] for r in summary.optimization_recommendations}
        assert types == {"model_optimization", "usage_optimization"}

    async def test_user_activity(self, db, seeded, day):
        """Per-user activity with peak hour and source split."""
        service = AggregationService(db)
        await service.aggregate_daily_usage(day.date())

        result = await service.aggregate_user_activity(day.date())

        assert result == {"users": 2}
        row = (
            await db.execute(select(UserActivityMetrics).where(UserActivityMetrics.user_id == "user-1"))
        ).scalar_one()
        assert row.total_requests == 3
        assert row.unique_models_used == 2
        assert row.playground_usage == 2
        assert row.api_usage == 1
        assert row.most_used_model == "gpt-4o-mini"
        assert row.peak_usage_hour == 9
        assert row.requests_per_session == 3

    async def test_prompt_performance(self, db, seeded, day):
        """Only traces with a library prompt are rolled up."""
        result = await AggregationService(db).aggregate_prompt_performance(day.date())

        assert result == {"prompts": 1}
        row = (await db.execute(select(PromptPerformanceTrend))).scalar_one()
        assert row.prompt_id == "p1"
        assert row.avg_user_rating == 4
        assert row.model_usage == {"gpt-4o-mini": 1}

    async def test_run_aggregations(self, db, seeded, day):
        """The full run reports every pass."""
        result = await AggregationService(db).run_aggregations(day.date())

        assert result["success"] is True
        assert result["errors"] == []
        assert set(result["results"]) == {
            "daily_usage", "model_stats", "cost_analysis", "user_activity", "prompt_performance",
        }


class TestRollupReads:
    """Tests for AnalyticsService over aggregated rows."""

    async def test_reads_after_aggregation(self, db, seeded, day):
        """Usage, model comparison, costs and user analytics read the rollups."""
        await AggregationService(db).run_aggregations(day.date())
        analytics = AnalyticsService(db)
        end = day + timedelta(days=1)

        usage = await analytics.get_usage_metrics(day, end - timedelta(seconds=1))
        assert usage.total_requests == 4
        assert usage.failed_requests == 1
        assert usage.error_rate == pytest.approx(25)
        assert usage.unique_users == 2

        models = await analytics.compare_models(day, end)
        assert {m.model_id for m in models} == {"gpt-4o-mini", "gpt-4o"}
        assert models[0].model_id == "gpt-4o-mini"

        costs = await analytics.analyze_costs(day, end - timedelta(seconds=1))
        assert costs.total_spend == pytest.approx(0.04)
        assert costs.cost_by_user["user-1"] == pytest.approx(0.03)

        user = await analytics.get_user_analytics("user-1", day, end)
        assert user.total_requests == 3
        assert user.favorite_models == ["gpt-4o-mini"]
        assert user.usage_patterns.peak_hours == [9]

    async def test_predictive_rejects_unknown_metric(self, db):
        """Only usage, cost and performance can be forecast."""
        with pytest.raises(ValueError):
            await AnalyticsService(db).get_predictive_analytics("latency")

    async def test_predictive_needs_a_week_of_history(self, db, seeded, day):
        """With a single day of history there is no forecast."""
        await AggregationService(db).aggregate_daily_usage(day.date())

        result = await AnalyticsService(db).get_predictive_analytics("usage", forecast_days=7)

        assert [p.value for p in result.historical] == [4]
        assert result.forecast == []
        assert result.trend == "stable"
