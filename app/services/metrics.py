"""Prometheus metrics for AI usage, trace processing and evaluation scores.

Everything registers on ``metrics_registry`` rather than the process-wide
default so ``/metrics`` exposes only these series.
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from app.services.tracing import TraceContextStore

logger = logging.getLogger(__name__)

metrics_registry = CollectorRegistry()

# AI usage

ai_tokens_used = Counter(
    "ai_tokens_used",
    "Total AI tokens consumed",
    ["model", "provider", "token_type"],
    registry=metrics_registry,
)

ai_token_cost = Counter(
    "ai_token_cost",
    "Total cost of AI tokens in USD",
    ["model", "provider"],
    registry=metrics_registry,
)

ai_model_request_duration_seconds = Histogram(
    "ai_model_request_duration_seconds",
    "AI model request duration in seconds",
    ["model", "provider", "status"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
    registry=metrics_registry,
)

ai_model_request_failures = Counter(
    "ai_model_request_failures",
    "Total number of failed AI model requests",
    ["model", "provider", "error_type"],
    registry=metrics_registry,
)

# Tracing

active_traces = Gauge(
    "active_traces_count",
    "Traces held in the in-process registry",
    ["status"],
    registry=metrics_registry,
)

trace_processing_duration_seconds = Histogram(
    "trace_processing_duration_seconds",
    "Time spent persisting trace state",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5],
    registry=metrics_registry,
)

# Evaluation

evaluation_scores = Histogram(
    "evaluation_scores",
    "Distribution of evaluation scores",
    ["evaluator", "model"],
    buckets=[0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1],
    registry=metrics_registry,
)


def record_ai_request(
    model: str,
    provider: str,
    duration: float,
    status: str = "success",
    input_tokens: int | None = None,
    output_tokens: int | None = None,
    cost: float | None = None,
    error_type: str | None = None,
) -> None:
    """Record one model request: latency, tokens, cost and any failure.

    Args:
        model: Model id the request went to
        provider: Provider that served it (openai, openrouter, test)
        duration: Wall time in seconds
        status: Terminal trace status
        input_tokens: Prompt tokens, if known
        output_tokens: Completion tokens, if known
        cost: Total cost in USD, if known
        error_type: Error code when the request failed
    """
    try:
        ai_model_request_duration_seconds.labels(
            model=model, provider=provider, status=status
        ).observe(duration)

        if input_tokens:
            ai_tokens_used.labels(model=model, provider=provider, token_type="input").inc(
                input_tokens
            )
        if output_tokens:
            ai_tokens_used.labels(model=model, provider=provider, token_type="output").inc(
                output_tokens
            )
        if cost:
            ai_token_cost.labels(model=model, provider=provider).inc(cost)

        if error_type:
            ai_model_request_failures.labels(
                model=model, provider=provider, error_type=error_type
            ).inc()
    except Exception as e:
        logger.warning(f"Failed to record AI request metrics: {e}")


def record_evaluation_score(evaluator: str, model: str | None, score: float) -> None:
    """Observe one evaluation score."""
    try:
        evaluation_scores.labels(evaluator=evaluator, model=model or "unknown").observe(score)
    except Exception as e:
        logger.warning(f"Failed to record evaluation score: {e}")


@contextmanager
def time_trace_operation(operation: str) -> Iterator[None]:
    """Time a block of trace persistence work, whether or not it raises."""
    started = time.perf_counter()
    try:
        yield
    finally:
        trace_processing_duration_seconds.labels(operation=operation).observe(
            time.perf_counter() - started
        )


def refresh_active_traces(store: TraceContextStore) -> None:
    """Set the active-trace gauge from the registry's current contents."""
    traces = store.get_all_active_traces()
    completed = sum(1 for t in traces if t.is_complete)
    active_traces.labels(status="active").set(len(traces) - completed)
    active_traces.labels(status="completed").set(completed)


def render_metrics(store: TraceContextStore) -> tuple[bytes, str]:
    """Exposition payload and its content type."""
    refresh_active_traces(store)
    return generate_latest(metrics_registry), CONTENT_TYPE_LATEST
