"""Periodic rollup tasks."""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable

from app.tasks.celery_app import celery_app
from app.utils.time import utc_now

logger = logging.getLogger(__name__)


def _run_with_service(action: Callable[[Any], Awaitable[dict]]) -> dict:
    """Run an aggregation coroutine on a fresh engine inside this worker process."""

    async def _inner() -> dict:
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

        from app.config import get_settings
        from app.services.analytics import AggregationService

        settings = get_settings()
        engine = create_async_engine(settings.async_database_url)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        try:
            async with session_factory() as db:
                return await action(AggregationService(db))
        finally:
            await engine.dispose()

    return asyncio.run(_inner())


@celery_app.task(name="app.tasks.aggregation.run_daily_aggregations")
def run_daily_aggregations(target_date: str | None = None) -> dict:
    """
    Run every rollup pass for one day.

    Args:
        target_date: ISO date to aggregate (default yesterday, UTC)

    Returns:
        Dict with success, per-pass results and errors
    """
    day = date.fromisoformat(target_date) if target_date else utc_now().date() - timedelta(days=1)
    result = _run_with_service(lambda service: service.run_aggregations(day))

    if result["success"]:
        logger.info(f"Daily aggregations for {day} completed")
    else:
        logger.error(f"Daily aggregations for {day} had failures: {result['errors']}")
    return result


@celery_app.task(name="app.tasks.aggregation.aggregate_hourly_model_statistics")
def aggregate_hourly_model_statistics() -> dict:
    """
    Refresh model statistics for the hour that just ended.

    Returns:
        Dict with models and periods counts
    """
    reference = utc_now() - timedelta(hours=1)
    result = _run_with_service(
        lambda service: service.aggregate_model_statistics("hour", reference)
    )
    logger.info(f"Hourly model statistics: {result['models']} models")
    return result
