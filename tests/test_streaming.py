"""Tests for the streaming orchestrator."""

from unittest.mock import AsyncMock, patch

import pytest

from app.schemas.playground import StreamRequest
from app.services.streaming import (
    GENERATION_ERROR,
    GENERATION_EXCEPTION,
    GENERIC_ERROR_MESSAGE,
    VALIDATION_ERROR,
    StreamingOrchestrator,
    estimate_usage,
)
from app.services.tracing import TraceService


pytestmark = pytest.mark.asyncio


@pytest.fixture
def orchestrator(session_factory, ai_client, store, mock_mirror) -> StreamingOrchestrator:
    return StreamingOrchestrator(
        session_factory, ai_client, store, mirror=mock_mirror, token_delay_seconds=0
    )


async def collect(orchestrator: StreamingOrchestrator, request: StreamRequest):
    stream = await orchestrator.open(request, user_id="user-1")
    messages = [message async for message in orchestrator.events(stream)]
    return stream, messages


async def load_trace(session_factory, store, trace_id: str):
    async with session_factory() as db:
        service = TraceService(db, store)
        return await service.get_trace(trace_id), await service.get_trace_events(trace_id)


class TestSuccessfulStream:
    """Tests for a generation that runs to completion."""

    async def test_message_order_and_final_trace(self, orchestrator, session_factory, store):
        """connected, then tokens, then exactly one complete; the trace ends as success."""
        request = StreamRequest(prompt="Say hello", model="test-model", parameters={"maxTokens": 20})

        stream, messages = await collect(orchestrator, request)

        types = [m["type"] for m in messages]
        assert types[0] == "connected"
        assert types[-1] == "complete"
        assert types.count("complete") == 1
        assert "token" in types
        assert "error" not in types
        assert all(m["traceId"] == stream.trace_id for m in messages)

        complete = messages[-1]["data"]
        assert complete["usage"]["totalTokens"] > 0
        assert complete["content"].startswith("Hello!")
        assert complete["provider"] == "test"

        trace, events = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "success"
        assert trace.streaming_enabled is True
        assert trace.first_token_latency_ms is not None
        assert trace.response_content == complete["content"]
        assert trace.langfuse_trace_id == "langfuse-trace-1"
        assert trace.langfuse_observation_id == "generation-1"
        assert events[0].event_type == "start"
        assert [e.event_type for e in events].count("complete") == 1
        assert trace.cost_calculation["total_cost"] == 0
        assert trace.tokens_used["total"] == complete["usage"]["totalTokens"]

    async def test_provider_call_recorded_as_span(self, orchestrator, store):
        """The provider call shows up as a finished span on the stream's trace."""
        request = StreamRequest(prompt="Say hello", model="test-model")

        stream, _ = await collect(orchestrator, request)

        spans = [s for s in store.get_all_active_spans() if s.trace_id == stream.trace_id]
        assert [s.operation_name for s in spans] == ["provider.generate"]
        assert spans[0].status == "success"
        assert spans[0].tags["args"] == {"stream": True}

    async def test_partial_content_accumulates(self, orchestrator):
        """Each token message carries the running partial text and count."""
        request = StreamRequest(prompt="Say hello", model="test-model", parameters={"maxTokens": 3})

        _, messages = await collect(orchestrator, request)

        tokens = [m["data"] for m in messages if m["type"] == "token"]
        assert [t["tokenCount"] for t in tokens] == [1, 2, 3]
        assert tokens[-1]["partial"] == "Hello! This is"

    async def test_reuses_active_trace(self, orchestrator, session_factory, store):
        """A request naming an active trace streams into that trace."""
        async with session_factory() as db:
            context = await TraceService(db, store).start_trace(
                user_id="user-1", model="test-model", prompt_content="Say hello"
            )
        request = StreamRequest(prompt="Say hello", model="test-model", traceId=context.trace_id)

        stream, _ = await collect(orchestrator, request)

        assert stream.reused is True
        assert stream.trace_id == context.trace_id

    async def test_structured_output_parsed(self, orchestrator, ai_client):
        """JSON content produces a structured message before complete."""
        request = StreamRequest(
            prompt="Give me json",
            model="test-model",
            structuredOutput={"enabled": True, "format": "json"},
        )

        with patch("app.ai.client.TEST_MODEL_RESPONSE", '{"greeting": "hello"}'):
            _, messages = await collect(orchestrator, request)

        types = [m["type"] for m in messages]
        assert types[-2:] == ["structured", "complete"]

    async def test_schema_mismatch_is_parse_error_not_failure(self, orchestrator, session_factory, store):
        """JSON missing a required property reports parse_error and still succeeds."""
        request = StreamRequest(
            prompt="Give me json",
            model="test-model",
            structuredOutput={
                "enabled": True,
                "format": "json",
                "schema": '{"type": "object", "required": ["name"]}',
            },
        )

        with patch("app.ai.client.TEST_MODEL_RESPONSE", '{"greeting": "hello"}'):
            stream, messages = await collect(orchestrator, request)

        types = [m["type"] for m in messages]
        assert types[-2:] == ["parse_error", "complete"]
        trace, events = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "success"
        structured = [e for e in events if e.event_type == "structured"]
        assert structured[0].event_data["errors"] == ["Missing required property: name"]


class TestFailedStream:
    """Tests for validation, provider and unexpected failures."""

    async def test_invalid_max_tokens_gives_single_error(self, orchestrator, session_factory, store):
        """maxTokens of -1 yields one validation error and an error trace."""
        request = StreamRequest(prompt="Say hello", model="test-model", parameters={"maxTokens": -1})

        stream, messages = await collect(orchestrator, request)

        assert len(messages) == 1
        assert messages[0]["type"] == "error"
        assert messages[0]["data"]["code"] == VALIDATION_ERROR

        trace, _ = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "error"
        assert trace.error_code == VALIDATION_ERROR

    async def test_provider_error_is_reported(self, orchestrator, session_factory, store):
        """An unconfigured provider surfaces as a generation error after connected."""
        request = StreamRequest(prompt="Say hello", model="gpt-4o-mini")

        stream, messages = await collect(orchestrator, request)

        assert [m["type"] for m in messages] == ["connected", "error"]
        assert messages[-1]["data"]["code"] == GENERATION_ERROR

        trace, _ = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "error"

    async def test_unexpected_exception_hides_details(self, orchestrator, ai_client, session_factory, store):
        """Exceptions become a generic error message; details stay on the trace."""
        ai_client.generate_response = AsyncMock(side_effect=RuntimeError("socket closed"))
        request = StreamRequest(prompt="Say hello", model="test-model")

        stream, messages = await collect(orchestrator, request)

        assert messages[-1]["type"] == "error"
        assert messages[-1]["data"] == {"error": GENERIC_ERROR_MESSAGE, "code": GENERATION_EXCEPTION}

        trace, _ = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "error"
        assert trace.error_message == "socket closed"

    async def test_client_disconnect_marks_cancelled(self, orchestrator, session_factory, store):
        """Closing the stream mid-generation records a cancelled trace."""
        request = StreamRequest(prompt="Say hello", model="test-model")
        stream = await orchestrator.open(request, user_id="user-1")
        events = orchestrator.events(stream)

        async for message in events:
            if message["type"] == "token":
                break
        await events.aclose()
        await orchestrator.wait_background()

        trace, trace_events = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "cancelled"
        assert any(e.event_data.get("action") == "cancelled" for e in trace_events)

    async def test_disconnect_after_complete_keeps_success(self, orchestrator, session_factory, store):
        """Closing the stream once complete was sent leaves the trace successful."""
        request = StreamRequest(prompt="Say hello", model="test-model", parameters={"maxTokens": 2})
        stream = await orchestrator.open(request, user_id="user-1")
        events = orchestrator.events(stream)

        async for message in events:
            if message["type"] == "complete":
                break
        await events.aclose()
        await orchestrator.wait_background()

        trace, trace_events = await load_trace(session_factory, store, stream.trace_id)
        assert trace.status == "success"
        assert [e.event_type for e in trace_events].count("complete") == 1
        assert not any(e.event_data.get("action") == "cancelled" for e in trace_events)


class TestUsageEstimate:
    """Tests for usage estimation."""

    async def test_estimate_from_prompt_length(self):
        """Prompt tokens are estimated at four characters each."""
        usage = estimate_usage("Say hello", 5)

        assert usage.prompt_tokens == 3
        assert usage.total_tokens == 8
