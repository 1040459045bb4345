"""Celery application configuration."""

from celery import Celery

from app.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "promptlab",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.tasks.aggregation",
    ],
)

# Configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Rollups are keyed on UTC days
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result settings
    result_expires=3600,  # 1 hour

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Beat schedule for periodic tasks
    beat_schedule={
        "aggregate-hourly-model-statistics": {
            "task": "app.tasks.aggregation.aggregate_hourly_model_statistics",
            "schedule": 3600.0,  # Every hour
        },
        "run-daily-aggregations": {
            "task": "app.tasks.aggregation.run_daily_aggregations",
            "schedule": 86400.0,  # Every 24 hours, for the previous day
        },
    },
)
