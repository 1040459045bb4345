"""Tests for analytics computed from trace rows."""

from datetime import timedelta

import pytest

from app.schemas.tracing import TraceFilters, TraceMetrics
from app.services.analytics import TraceAnalytics
from app.services.analytics.trace_analytics import breakdown, grade_performance
from app.utils.time import utc_now
from tests.factories import at, make_trace


pytestmark = pytest.mark.asyncio


@pytest.fixture
def day():
    """Midnight three days ago, clear of today's traffic."""
    return (utc_now() - timedelta(days=3)).replace(hour=0, minute=0, second=0, microsecond=0)


class TestGrading:
    """Tests for the pure grading helpers."""

    async def test_grades(self):
        """Grades step down as error rate, duration or latency grow."""
        assert grade_performance(TraceMetrics(error_rate=0, average_duration=1000, average_latency=200)) == "A"
        assert grade_performance(TraceMetrics(error_rate=3, average_duration=1000, average_latency=200)) == "B"
        assert grade_performance(TraceMetrics(error_rate=0, average_duration=9000, average_latency=200)) == "C"
        assert grade_performance(TraceMetrics(error_rate=50, average_duration=1000, average_latency=200)) == "F"

    async def test_breakdown_quality_buckets_use_five_point_scale(self):
        """Trace quality scores bucket at 4.5, 3.5 and 2.5."""
        traces = [make_trace(quality_score=s) for s in (4.8, 4.0, 3.0, 1.0)]

        result = breakdown(traces)

        assert result.quality_distribution == {"excellent": 1, "good": 1, "average": 1, "poor": 1}
        assert result.cost_per_token == pytest.approx(0.0001)

    async def test_breakdown_counts_error_codes(self):
        """Error traces are grouped by code, missing codes as unknown."""
        traces = [
            make_trace(status="error", error_code="RATE_LIMIT"),
            make_trace(status="error"),
            make_trace(),
        ]

        result = breakdown(traces)

        assert result.error_types == {"RATE_LIMIT": 1, "unknown": 1}
        assert result.model_usage == {"gpt-4o-mini": 3}


class TestModelPerformance:
    """Tests for per-model analysis."""

    async def test_most_used_first_with_recommendations(self, db, add_traces, day):
        """Models are sorted by usage and labelled from success, speed and cost."""
        await add_traces(
            {"created_at": at(day, 9)},
            {"created_at": at(day, 10)},
            {"created_at": at(day, 11)},
            {"created_at": at(day, 9), "model_id": "gpt-4o"},
            {"created_at": at(day, 10), "model_id": "gpt-4o", "status": "error"},
        )
        analytics = TraceAnalytics(db)

        results = await analytics.analyze_model_performance(day, day + timedelta(days=1))

        assert [r.model_id for r in results] == ["gpt-4o-mini", "gpt-4o"]
        assert results[0].success_rate == 100
        assert results[0].recommendation == "excellent"
        assert results[1].success_rate == 50
        assert results[1].recommendation == "poor"


class TestUsageReport:
    """Tests for the usage report."""

    async def test_totals_and_daily_costs(self, db, add_traces, day):
        """Totals, per-day costs and error shares over the window."""
        await add_traces(
            {"created_at": at(day, 9), "user_id": "user-1", "total_cost": 0.02},
            {"created_at": at(day, 15), "user_id": "user-2", "total_cost": 0.04},
            {"created_at": at(day + timedelta(days=1), 9), "user_id": "user-1", "status": "error"},
        )
        analytics = TraceAnalytics(db)

        report = await analytics.generate_usage_report(day, day + timedelta(days=2))

        assert report.total_requests == 3
        assert report.unique_users == 2
        assert report.avg_requests_per_user == pytest.approx(1.5)
        assert report.total_cost == pytest.approx(0.07)
        assert [p.requests for p in report.cost_trends] == [2, 1]
        assert report.cost_trends[0].cost == pytest.approx(0.06)
        assert report.error_analysis.total_errors == 1
        assert report.error_analysis.top_error_types[0].type == "UNKNOWN"

    async def test_empty_window(self, db, day):
        """No traces gives a zeroed report."""
        report = await TraceAnalytics(db).generate_usage_report(day, day + timedelta(days=1))

        assert report.total_requests == 0
        assert report.avg_requests_per_user == 0
        assert report.error_analysis.error_rate == 0


class TestInsights:
    """Tests for performance insights and cost opportunities."""

    async def test_expensive_model_flagged(self):
        """The model with the highest average cost is flagged above the threshold."""
        traces = [
            make_trace(model_id="gpt-4o", total_cost=0.05),
            make_trace(model_id="gpt-4o", total_cost=0.03),
            make_trace(total_cost=0.001),
        ]

        opportunities = TraceAnalytics.identify_cost_optimizations(traces)

        assert len(opportunities) == 1
        assert "gpt-4o" in opportunities[0].recommendation
        assert opportunities[0].potential_savings == pytest.approx(0.024)

    async def test_cheap_models_not_flagged(self):
        """Nothing is flagged when every model is cheap."""
        assert TraceAnalytics.identify_cost_optimizations([make_trace(total_cost=0.001)]) == []

    async def test_daily_latency_series(self, db, add_traces, day):
        """Latency is averaged per day with a p95."""
        await add_traces(
            {"created_at": at(day, 9), "first_token_latency_ms": 100, "quality_score": 4.0, "prompt_id": "p1"},
            {"created_at": at(day, 10), "first_token_latency_ms": 300, "quality_score": 5.0, "prompt_id": "p1"},
        )

        insights = await TraceAnalytics(db).get_performance_insights(day, day + timedelta(days=1))

        assert insights.latency_trends[0].avg_latency == pytest.approx(200)
        assert insights.latency_trends[0].p95_latency == 300
        assert insights.quality_insights.avg_quality_score == pytest.approx(4.5)
        assert insights.quality_insights.top_performing_prompts[0].prompt_id == "p1"


class TestMetricsQuery:
    """Tests for the metrics query."""

    async def test_grouping_and_hourly(self, db, add_traces, day):
        """Explicit dates, grouping by model and hourly buckets."""
        await add_traces(
            {"created_at": at(day, 9)},
            {"created_at": at(day, 9, 30), "model_id": "gpt-4o", "status": "error"},
            {"created_at": at(day, 14)},
        )
        filters = TraceFilters(start_date=day, end_date=day + timedelta(days=1))

        response = await TraceAnalytics(db).query_metrics(
            filters, group_by="model", include_hourly=True, include_comparison=True
        )

        assert response.data_points == 3
        assert response.metrics.total_traces == 3
        assert set(response.groups) == {"gpt-4o", "gpt-4o-mini"}
        assert response.groups["gpt-4o-mini"].count == 2
        assert [b.requests for b in response.hourly] == [2, 1]
        assert response.hourly[0].error_rate == pytest.approx(50)
        assert response.comparison.previous.total_traces == 0
        assert response.comparison.trends["total_traces"] == "increasing"


class TestDashboard:
    """Tests for the dashboard snapshot."""

    async def test_today_totals(self, db, add_traces):
        """Today's totals and the top model come from today's traces."""
        await add_traces(
            {"created_at": utc_now(), "model_id": "gpt-4o", "total_cost": 0.02},
            {"created_at": utc_now(), "model_id": "gpt-4o", "total_cost": 0.02},
            {"created_at": utc_now(), "total_cost": 0.01},
        )

        dashboard = await TraceAnalytics(db).get_dashboard_data()

        assert dashboard.today.total_requests == 3
        assert dashboard.today.total_cost == pytest.approx(0.05)
        assert dashboard.today.top_model == "gpt-4o"
        assert dashboard.live.throughput == pytest.approx(3 / 5)
        assert dashboard.alerts == []
