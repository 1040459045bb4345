"""Aggregation service - periodic rollups of raw traces into analytics tables.

Every pass is idempotent: rows are upserted on the rollup's natural key, so
re-running a pass for the same period overwrites rather than duplicates. A
failed upsert for one model, user or prompt is counted and skipped; a failed
read of the source rows fails the whole pass.
"""

import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    CostAnalysisSummary,
    ModelUsageStatistics,
    PromptPerformanceTrend,
    Trace,
    TraceSource,
    TraceStatus,
    UsageAnalyticsDaily,
    UserActivityMetrics,
)
from app.services.analytics.trends import mean, percentage, top_counts
from app.services.tracing import AnalyticsQueryError
from app.utils.time import day_bounds, ensure_utc, period_bounds, start_of_day, utc_now

logger = logging.getLogger(__name__)

# Cost analysis recommendation heuristics
EXPENSIVE_MODEL_SHARE = 0.3
EXPENSIVE_MODEL_SAVINGS = 0.4
HEAVY_USER_SHARE = 0.1
CACHING_SAVINGS = 0.15
BATCH_TOTAL_THRESHOLD = 1000.0
BATCH_SAVINGS = 0.1
FORECAST_GROWTH = 1.1

TOP_USERS_LIMIT = 10
COMMON_ERRORS_LIMIT = 5

_NON_UPDATABLE = {"id", "created_at"}


async def upsert(
    db: AsyncSession, model: type, values: dict[str, Any], keys: list[str]
) -> None:
    """INSERT ... ON CONFLICT (keys) DO UPDATE for PostgreSQL and SQLite."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        statement = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        statement = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"Upsert is not supported on {dialect}")

    updates = {
        name: statement.excluded[name]
        for name in values
        if name not in keys and name not in _NON_UPDATABLE
    }
    updates["updated_at"] = utc_now()
    await db.execute(statement.on_conflict_do_update(index_elements=keys, set_=updates))


def quality_distribution(scores: list[float]) -> dict[str, int]:
    """Bucket quality scores on a 0-1 scale."""
    return {
        "excellent": sum(1 for s in scores if s >= 0.9),
        "good": sum(1 for s in scores if 0.7 <= s < 0.9),
        "fair": sum(1 for s in scores if 0.5 <= s < 0.7),
        "poor": sum(1 for s in scores if s < 0.5),
    }


def calculate_model_stats(traces: list[Trace]) -> dict[str, Any]:
    """Statistics for one model's traces in one period."""
    total = len(traces)
    total_tokens = sum(t.total_tokens for t in traces)
    total_cost = sum(t.total_cost for t in traces)
    scores = [t.quality_score for t in traces if t.quality_score]
    error_types = Counter(t.error_code for t in traces if t.error_code)

    return {
        "total_requests": total,
        "unique_users": len({t.user_id for t in traces}),
        "total_tokens": total_tokens,
        "total_cost": total_cost,
        "success_rate": percentage(
            sum(1 for t in traces if t.status == TraceStatus.SUCCESS.value), total
        ),
        "error_rate": percentage(
            sum(1 for t in traces if t.status == TraceStatus.ERROR.value), total
        ),
        "avg_response_time_ms": mean([t.duration_ms for t in traces if t.duration_ms]),
        "avg_tokens_per_second": mean(
            [t.tokens_per_second for t in traces if t.tokens_per_second]
        ),
        "cost_per_token": total_cost / total_tokens if total_tokens > 0 else 0.0,
        "cost_per_request": total_cost / total if total else 0.0,
        "avg_quality_score": mean(scores),
        "quality_distribution": quality_distribution(scores),
        "error_types": dict(error_types),
        "common_errors": [code for code, _ in error_types.most_common(COMMON_ERRORS_LIMIT)],
    }


def peak_hour(traces: list[Trace]) -> int | None:
    """UTC hour of day with the most traces."""
    hours = top_counts((ensure_utc(t.created_at).hour for t in traces), 1)
    return hours[0][0] if hours else None


def session_stats(traces: list[Trace]) -> tuple[float | None, float | None]:
    """Average session length in minutes and requests per session."""
    sessions: dict[str, list[Trace]] = defaultdict(list)
    for trace in traces:
        sessions[trace.session_id].append(trace)
    if not sessions:
        return None, None

    durations = []
    for session_traces in sessions.values():
        first = min(ensure_utc(t.start_time) for t in session_traces)
        last = max(ensure_utc(t.end_time or t.start_time) for t in session_traces)
        durations.append((last - first).total_seconds() / 60)
    return mean(durations), len(traces) / len(sessions)


class AggregationService:
    """Runs the rollup passes.

    Args:
        db: Database session; each upserted entity is committed on its own
        Remaining keyword arguments override the cost analysis heuristics.
    """

    def __init__(
        self,
        db: AsyncSession,
        expensive_model_share: float = EXPENSIVE_MODEL_SHARE,
        expensive_model_savings: float = EXPENSIVE_MODEL_SAVINGS,
        heavy_user_share: float = HEAVY_USER_SHARE,
        caching_savings: float = CACHING_SAVINGS,
        batch_total_threshold: float = BATCH_TOTAL_THRESHOLD,
        batch_savings: float = BATCH_SAVINGS,
        forecast_growth: float = FORECAST_GROWTH,
    ):
        self.db = db
        self.expensive_model_share = expensive_model_share
        self.expensive_model_savings = expensive_model_savings
        self.heavy_user_share = heavy_user_share
        self.caching_savings = caching_savings
        self.batch_total_threshold = batch_total_threshold
        self.batch_savings = batch_savings
        self.forecast_growth = forecast_growth

    async def _fetch(self, query: Select, what: str) -> list[Any]:
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch {what}: {e}", exc_info=True)
            raise AnalyticsQueryError(f"Failed to fetch {what}: {e}") from e
        return list(result.scalars().all())

    async def _traces_between(self, start: datetime, end: datetime) -> list[Trace]:
        return await self._fetch(
            select(Trace)
            .where(Trace.created_at >= start)
            .where(Trace.created_at < end)
            .order_by(Trace.created_at.asc()),
            "traces",
        )

    async def _upsert_entity(
        self, model: type, values: dict[str, Any], keys: list[str], label: str
    ) -> bool:
        try:
            await upsert(self.db, model, values, keys)
            await self.db.commit()
            return True
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to upsert {model.__tablename__} for {label}: {e}")
            return False

    async def run_aggregations(self, target_date: date | None = None) -> dict[str, Any]:
        """Run every pass, collecting per-pass failures instead of stopping.

        Returns:
            Dict with success, results (per pass) and errors
        """
        target_date = target_date or utc_now().date()
        reference = start_of_day(target_date)
        results: dict[str, Any] = {}
        errors: list[str] = []

        passes = (
            ("daily_usage", "Daily usage", lambda: self.aggregate_daily_usage(target_date)),
            ("model_stats", "Model statistics", lambda: self.aggregate_model_statistics("day", reference)),
            ("cost_analysis", "Cost analysis", lambda: self.aggregate_cost_analysis("day", reference)),
            ("user_activity", "User activity", lambda: self.aggregate_user_activity(target_date)),
            ("prompt_performance", "Prompt performance", lambda: self.aggregate_prompt_performance(target_date)),
        )
        for key, label, run in passes:
            try:
                results[key] = await run()
            except Exception as e:
                logger.error(f"{label} aggregation failed: {e}", exc_info=True)
                errors.append(f"{label} aggregation failed: {e}")

        logger.info(
            f"Aggregations for {target_date} finished: {len(results)} passes ok, "
            f"{len(errors)} failed"
        )
        return {"success": not errors, "results": results, "errors": errors}

    async def aggregate_daily_usage(self, target_date: date | None = None) -> dict[str, int]:
        """Roll one day's traces up per (user, model, source)."""
        target_date = target_date or utc_now().date()
        start, end = day_bounds(target_date)
        traces = await self._traces_between(start, end)

        existing = {
            (row.user_id, row.model_id, row.source)
            for row in await self._fetch(
                select(UsageAnalyticsDaily).where(UsageAnalyticsDaily.date == target_date),
                "daily usage",
            )
        }

        groups: dict[tuple[str, str, str], list[Trace]] = defaultdict(list)
        for trace in traces:
            groups[(trace.user_id, trace.model_id, trace.source)].append(trace)

        inserted = updated = 0
        for (user_id, model_id, source), group in groups.items():
            scores = [t.quality_score for t in group if t.quality_score]
            values = {
                "date": target_date,
                "user_id": user_id,
                "model_id": model_id,
                "source": source,
                "total_requests": len(group),
                "successful_requests": sum(
                    1 for t in group if t.status == TraceStatus.SUCCESS.value
                ),
                "failed_requests": sum(1 for t in group if t.status == TraceStatus.ERROR.value),
                "total_tokens": sum(t.total_tokens for t in group),
                "total_cost": sum(t.total_cost for t in group),
                "avg_duration_ms": mean([t.duration_ms for t in group if t.duration_ms]),
                "avg_tokens_per_second": mean(
                    [t.tokens_per_second for t in group if t.tokens_per_second]
                ),
                "avg_quality_score": mean(scores) if scores else None,
            }
            ok = await self._upsert_entity(
                UsageAnalyticsDaily,
                values,
                ["date", "user_id", "model_id", "source"],
                f"{user_id}/{model_id}/{source}",
            )
            if not ok:
                continue
            if (user_id, model_id, source) in existing:
                updated += 1
            else:
                inserted += 1

        return {"processed": inserted + updated, "inserted": inserted, "updated": updated}

    async def aggregate_model_statistics(
        self, period_type: str = "day", reference: datetime | None = None
    ) -> dict[str, int]:
        """Upsert one statistics row per model for the period containing ``reference``.

        Raises:
            ValueError: If period_type is not hour, day, week or month
        """
        if period_type not in ("hour", "day", "week", "month"):
            raise ValueError(f"Unsupported period type: {period_type}")
        period_start, period_end = period_bounds(period_type, reference or utc_now())
        traces = await self._traces_between(period_start, period_end)

        by_model: dict[str, list[Trace]] = defaultdict(list)
        for trace in traces:
            by_model[trace.model_id].append(trace)

        models_processed = 0
        for model_id, model_traces in by_model.items():
            values = {
                "model_id": model_id,
                "period_type": period_type,
                "period_start": period_start,
                "period_end": period_end,
                **calculate_model_stats(model_traces),
            }
            if await self._upsert_entity(
                ModelUsageStatistics, values, ["model_id", "period_type", "period_start"], model_id
            ):
                models_processed += 1

        return {"models": models_processed, "periods": 1}

    async def aggregate_cost_analysis(
        self, period_type: str = "day", reference: datetime | None = None
    ) -> dict[str, Any]:
        """Sum daily usage into one cost summary row for the period.

        Raises:
            ValueError: If period_type is not day, week, month or quarter
            AnalyticsQueryError: If the rollup rows or the upsert fail
        """
        if period_type not in ("day", "week", "month", "quarter"):
            raise ValueError(f"Unsupported period type: {period_type}")
        period_start, period_end = period_bounds(period_type, reference or utc_now())
        start_day, end_day = period_start.date(), period_end.date()

        rows = await self._fetch(
            select(UsageAnalyticsDaily)
            .where(UsageAnalyticsDaily.date >= start_day)
            .where(UsageAnalyticsDaily.date < end_day),
            "daily usage",
        )

        total_cost = sum(row.total_cost for row in rows)
        model_costs: dict[str, float] = defaultdict(float)
        user_costs: dict[str, float] = defaultdict(float)
        for row in rows:
            model_costs[row.model_id] += row.total_cost
            user_costs[row.user_id] += row.total_cost

        recommendations = self.generate_optimization_recommendations(
            model_costs, user_costs, total_cost
        )

        previous_start, _ = period_bounds(period_type, period_start - timedelta(seconds=1))
        previous = await self._fetch(
            select(CostAnalysisSummary)
            .where(CostAnalysisSummary.period_type == period_type)
            .where(CostAnalysisSummary.period_start == previous_start.date()),
            "previous cost summary",
        )
        change = None
        if previous and previous[0].total_cost > 0:
            change = percentage(total_cost - previous[0].total_cost, previous[0].total_cost)

        values = {
            "period_type": period_type,
            "period_start": start_day,
            "period_end": end_day,
            "total_cost": total_cost,
            "total_requests": sum(row.total_requests for row in rows),
            "total_tokens": sum(row.total_tokens for row in rows),
            "model_costs": dict(model_costs),
            "user_costs": dict(user_costs),
            "cost_change_percentage": change,
            "cost_forecast": total_cost * self.forecast_growth,
            "optimization_recommendations": recommendations,
            "potential_savings": sum(r["savings"] for r in recommendations),
            "top_users": [
                {"user_id": user_id, "cost": cost}
                for user_id, cost in sorted(user_costs.items(), key=lambda i: i[1], reverse=True)[
                    :TOP_USERS_LIMIT
                ]
            ],
        }
        try:
            await upsert(self.db, CostAnalysisSummary, values, ["period_type", "period_start"])
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise AnalyticsQueryError(f"Failed to upsert cost analysis: {e}") from e

        return {"periods": 1, "total_cost": total_cost}

    def generate_optimization_recommendations(
        self, model_costs: dict[str, float], user_costs: dict[str, float], total_cost: float
    ) -> list[dict[str, Any]]:
        recommendations = []

        expensive = sorted(
            ((m, c) for m, c in model_costs.items() if c > total_cost * self.expensive_model_share),
            key=lambda i: i[1],
            reverse=True,
        )
        if expensive:
            model_id, cost = expensive[0]
            recommendations.append({
                "type": "model_optimization",
                "description": f"Switch from {model_id} to cheaper alternatives for routine tasks",
                "savings": cost * self.expensive_model_savings,
            })

        if any(c > total_cost * self.heavy_user_share for c in user_costs.values()):
            recommendations.append({
                "type": "usage_optimization",
                "description": "Implement caching for frequently repeated queries",
                "savings": total_cost * self.caching_savings,
            })

        if total_cost > self.batch_total_threshold:
            recommendations.append({
                "type": "batch_processing",
                "description": "Batch similar requests to reduce API calls",
                "savings": total_cost * self.batch_savings,
            })

        return recommendations

    async def aggregate_user_activity(self, target_date: date | None = None) -> dict[str, int]:
        """Upsert one activity row per user for the day.

        Totals come from the daily usage rollup; peak hour, prompts and
        sessions come from that day's traces.
        """
        target_date = target_date or utc_now().date()
        rows = await self._fetch(
            select(UsageAnalyticsDaily).where(UsageAnalyticsDaily.date == target_date),
            "daily usage",
        )
        start, end = day_bounds(target_date)
        traces_by_user: dict[str, list[Trace]] = defaultdict(list)
        for trace in await self._traces_between(start, end):
            traces_by_user[trace.user_id].append(trace)

        rows_by_user: dict[str, list[UsageAnalyticsDaily]] = defaultdict(list)
        for row in rows:
            rows_by_user[row.user_id].append(row)

        users_processed = 0
        for user_id, user_rows in rows_by_user.items():
            model_usage: Counter = Counter()
            for row in user_rows:
                model_usage[row.model_id] += row.total_requests

            user_traces = traces_by_user.get(user_id, [])
            prompts = top_counts((t.prompt_id for t in user_traces if t.prompt_id), 1)
            avg_session, per_session = session_stats(user_traces)

            values = {
                "user_id": user_id,
                "date": target_date,
                "total_requests": sum(r.total_requests for r in user_rows),
                "unique_prompts": len({t.prompt_id for t in user_traces if t.prompt_id}),
                "unique_models_used": len(model_usage),
                "total_cost": sum(r.total_cost for r in user_rows),
                "peak_usage_hour": peak_hour(user_traces),
                "most_used_model": model_usage.most_common(1)[0][0] if model_usage else None,
                "most_used_prompt_id": prompts[0][0] if prompts else None,
                "avg_session_duration_minutes": avg_session,
                "requests_per_session": per_session,
                "playground_usage": sum(
                    r.total_requests for r in user_rows if r.source == TraceSource.PLAYGROUND.value
                ),
                "api_usage": sum(
                    r.total_requests for r in user_rows if r.source == TraceSource.API.value
                ),
            }
            if await self._upsert_entity(UserActivityMetrics, values, ["user_id", "date"], user_id):
                users_processed += 1

        return {"users": users_processed}

    async def aggregate_prompt_performance(self, target_date: date | None = None) -> dict[str, int]:
        """Upsert one performance row per library prompt used that day."""
        target_date = target_date or utc_now().date()
        start, end = day_bounds(target_date)
        traces = [t for t in await self._traces_between(start, end) if t.prompt_id]

        by_prompt: dict[str, list[Trace]] = defaultdict(list)
        for trace in traces:
            by_prompt[trace.prompt_id].append(trace)

        prompts_processed = 0
        for prompt_id, prompt_traces in by_prompt.items():
            uses = len(prompt_traces)
            total_cost = sum(t.total_cost for t in prompt_traces)
            ratings = [t.user_rating for t in prompt_traces if t.user_rating]
            values = {
                "prompt_id": prompt_id,
                "date": target_date,
                "total_uses": uses,
                "unique_users": len({t.user_id for t in prompt_traces}),
                "total_cost": total_cost,
                "avg_cost_per_use": total_cost / uses,
                "avg_duration_ms": sum(t.duration_ms or 0 for t in prompt_traces) / uses,
                "success_rate": percentage(
                    sum(1 for t in prompt_traces if t.status == TraceStatus.SUCCESS.value), uses
                ),
                "avg_quality_score": mean(
                    [t.quality_score for t in prompt_traces if t.quality_score]
                ),
                "avg_user_rating": mean(ratings) if ratings else None,
                "model_usage": dict(Counter(t.model_id for t in prompt_traces)),
            }
            if await self._upsert_entity(
                PromptPerformanceTrend, values, ["prompt_id", "date"], prompt_id
            ):
                prompts_processed += 1

        return {"prompts": prompts_processed}
