"""Tests for the Prometheus metrics layer."""

import pytest

from app.schemas.playground import StreamRequest
from app.services.metrics import (
    metrics_registry,
    record_ai_request,
    record_evaluation_score,
    refresh_active_traces,
    render_metrics,
    time_trace_operation,
)
from app.services.streaming import VALIDATION_ERROR, StreamingOrchestrator


pytestmark = pytest.mark.asyncio


def sample(name: str, **labels) -> float:
    """Current value of a series, 0 when it has never been touched."""
    return metrics_registry.get_sample_value(name, labels) or 0.0


@pytest.fixture
def orchestrator(session_factory, ai_client, store, mock_mirror) -> StreamingOrchestrator:
    return StreamingOrchestrator(
        session_factory, ai_client, store, mirror=mock_mirror, token_delay_seconds=0
    )


class TestRecording:
    """Tests for the recording helpers."""

    async def test_successful_request(self):
        """Tokens by type, cost and latency are recorded for a success."""
        labels = {"model": "metrics-model-a", "provider": "openai"}
        before_input = sample("ai_tokens_used_total", token_type="input", **labels)
        before_output = sample("ai_tokens_used_total", token_type="output", **labels)
        before_cost = sample("ai_token_cost_total", **labels)
        before_count = sample(
            "ai_model_request_duration_seconds_count", status="success", **labels
        )

        record_ai_request(
            "metrics-model-a", "openai", 1.5, input_tokens=100, output_tokens=40, cost=0.002
        )

        assert sample("ai_tokens_used_total", token_type="input", **labels) == before_input + 100
        assert sample("ai_tokens_used_total", token_type="output", **labels) == before_output + 40
        assert sample("ai_token_cost_total", **labels) == pytest.approx(before_cost + 0.002)
        assert (
            sample("ai_model_request_duration_seconds_count", status="success", **labels)
            == before_count + 1
        )

    async def test_failed_request_counts_failure(self):
        """An error type increments the failure counter."""
        labels = {"model": "metrics-model-b", "provider": "openrouter"}
        before = sample("ai_model_request_failures_total", error_type="GENERATION_ERROR", **labels)

        record_ai_request(
            "metrics-model-b", "openrouter", 0.2, status="error", error_type="GENERATION_ERROR"
        )

        assert (
            sample("ai_model_request_failures_total", error_type="GENERATION_ERROR", **labels)
            == before + 1
        )

    async def test_evaluation_score_without_model(self):
        """Scores with no model are labelled unknown."""
        before = sample("evaluation_scores_count", evaluator="metrics-eval", model="unknown")

        record_evaluation_score("metrics-eval", None, 0.75)

        assert sample("evaluation_scores_count", evaluator="metrics-eval", model="unknown") == before + 1

    async def test_timer_observes_on_error(self):
        """The persistence timer records even when the block raises."""
        before = sample("trace_processing_duration_seconds_count", operation="metrics-op")

        with pytest.raises(RuntimeError):
            with time_trace_operation("metrics-op"):
                raise RuntimeError("database gone")

        assert sample("trace_processing_duration_seconds_count", operation="metrics-op") == before + 1


class TestActiveTraces:
    """Tests for the active-trace gauge."""

    async def test_gauge_follows_registry(self, store):
        """Active and completed-in-grace traces are counted separately."""
        store.create_trace(user_id="user-1")
        done = store.create_trace(user_id="user-2")
        store.complete_trace(done.trace_id, {"status": "success"})

        refresh_active_traces(store)

        assert sample("active_traces_count", status="active") == 1
        assert sample("active_traces_count", status="completed") == 1

    async def test_render_exposition(self, store):
        """The payload is Prometheus text and carries the gauge."""
        store.create_trace(user_id="user-1")

        payload, content_type = render_metrics(store)

        assert content_type.startswith("text/plain")
        assert b'active_traces_count{status="active"} 1.0' in payload


class TestStreamMetrics:
    """Tests for metrics recorded by the streaming orchestrator."""

    async def test_success_records_tokens_and_timing(self, orchestrator):
        """A finished stream adds its output tokens and a complete timing."""
        before_tokens = sample(
            "ai_tokens_used_total", model="test-model", provider="test", token_type="output"
        )
        before_timing = sample("trace_processing_duration_seconds_count", operation="complete")
        request = StreamRequest(prompt="Say hello", model="test-model", parameters={"maxTokens": 3})

        stream = await orchestrator.open(request, user_id="user-1")
        messages = [m async for m in orchestrator.events(stream)]

        completion_tokens = messages[-1]["data"]["usage"]["completionTokens"]
        assert completion_tokens > 0
        assert (
            sample("ai_tokens_used_total", model="test-model", provider="test", token_type="output")
            == before_tokens + completion_tokens
        )
        assert (
            sample("trace_processing_duration_seconds_count", operation="complete")
            == before_timing + 1
        )

    async def test_validation_error_counts_failure(self, orchestrator):
        """Rejected parameters count as a failed request."""
        labels = {"model": "test-model", "provider": "test", "error_type": VALIDATION_ERROR}
        before = sample("ai_model_request_failures_total", **labels)
        request = StreamRequest(prompt="Say hello", model="test-model", parameters={"maxTokens": -1})

        stream = await orchestrator.open(request, user_id="user-1")
        [m async for m in orchestrator.events(stream)]

        assert sample("ai_model_request_failures_total", **labels) == before + 1
