"""Tests for trace persistence and queries."""

from datetime import timedelta

import pytest

from app.models import TraceEventType
from app.schemas.tracing import (
    CostCalculation,
    TraceErrorInfo,
    TraceFilters,
    TraceResult,
    TokensUsed,
)
from app.services.tracing import TraceNotFoundError, TraceService
from app.services.tracing.service import can_transition, summarize_traces
from app.utils.time import utc_now


pytestmark = pytest.mark.asyncio


async def start(service: TraceService, **overrides):
    values = {
        "user_id": "user-1",
        "model": "gpt-4o-mini",
        "prompt_content": "Say hello",
        "parameters": {"temperature": 0.5},
        "source": "playground",
    }
    values.update(overrides)
    return await service.start_trace(**values)


class TestStartTrace:
    """Tests for TraceService.start_trace."""

    async def test_inserts_pending_row_and_start_event(self, db, store):
        """Starting a trace writes a pending row and a first start event."""
        service = TraceService(db, store)

        context = await start(service)

        trace = await service.get_trace(context.trace_id)
        assert trace.status == "pending"
        assert trace.source == "playground"
        assert trace.streaming_enabled is False
        assert trace.trace_version == "1.0"

        events = await service.get_trace_events(context.trace_id)
        assert [e.event_type for e in events] == ["start"]
        assert events[0].sequence_number == 1
        assert events[0].event_data["prompt_length"] == len("Say hello")
        assert store.get_active_trace(context.trace_id) is not None

    async def test_event_sequence_increments(self, db, store):
        """Each appended event gets the next sequence number."""
        service = TraceService(db, store)
        context = await start(service)

        await service.add_trace_event(context.trace_id, TraceEventType.TOKEN, {"token": "Hi"})
        await service.add_trace_event(context.trace_id, "token", {"token": "!"})

        events = await service.get_trace_events(context.trace_id)
        assert [e.sequence_number for e in events] == [1, 2, 3]

    async def test_event_data_is_sanitized(self, db, store):
        """Secrets in event payloads are redacted before storage."""
        service = TraceService(db, store)
        context = await start(service)

        event = await service.add_trace_event(
            context.trace_id, "error", {"api_key": "sk-secret", "message": "boom"}
        )

        assert event.event_data["api_key"] != "sk-secret"
        assert event.event_data["message"] == "boom"


class TestUpdateTrace:
    """Tests for TraceService.update_trace."""

    async def test_applies_partial_update(self, db, store):
        """Only the given fields change."""
        service = TraceService(db, store)
        context = await start(service)

        trace = await service.update_trace(
            context.trace_id, {"status": "streaming", "streaming_enabled": True}
        )

        assert trace.status == "streaming"
        assert trace.streaming_enabled is True
        assert trace.prompt_content == "Say hello"

    async def test_stores_cost_and_usage(self, db, store):
        """Pricing a generation writes cost and token totals onto the trace."""
        service = TraceService(db, store)
        context = await start(service)

        cost = await service.calculate_and_store_trace_cost(
            context.trace_id, "openai", "gpt-4o-mini", 1000, 500
        )

        trace = await service.get_trace(context.trace_id)
        assert cost.total_cost == pytest.approx(0.00045)
        assert trace.cost_calculation["total_cost"] == pytest.approx(0.00045)
        assert trace.tokens_used == {"input": 1000, "output": 500, "total": 1500}
        assert trace.status == "pending"

    async def test_drops_backwards_status_but_keeps_other_fields(self, db, store):
        """Streaming cannot go back to pending; other fields still apply."""
        service = TraceService(db, store)
        context = await start(service)
        await service.update_trace(context.trace_id, {"status": "streaming"})

        trace = await service.update_trace(
            context.trace_id, {"status": "pending", "first_token_latency_ms": 120}
        )

        assert trace.status == "streaming"
        assert trace.first_token_latency_ms == 120

    async def test_unknown_trace_raises(self, db, store):
        """Updating a missing trace raises TraceNotFoundError."""
        service = TraceService(db, store)

        with pytest.raises(TraceNotFoundError):
            await service.update_trace("missing", {"status": "streaming"})


class TestCompleteTrace:
    """Tests for TraceService.complete_trace."""

    async def test_success_sets_metrics(self, db, store):
        """Completion records duration, tokens, cost and throughput."""
        service = TraceService(db, store)
        context = await start(service)
        # Pretend the request began two seconds ago
        store.update_trace(context.trace_id, {"start_time": context.start_time - 2000})

        trace = await service.complete_trace(
            context.trace_id,
            TraceResult(
                status="success",
                response="Hello!",
                tokens_used=TokensUsed(input=10, output=30, total=40),
                cost_calculation=CostCalculation(input_cost=0.001, output_cost=0.002, total_cost=0.003),
            ),
        )

        assert trace.status == "success"
        assert trace.response_content == "Hello!"
        assert trace.duration_ms >= 2000
        assert trace.tokens_used["total"] == 40
        assert trace.cost_calculation["total_cost"] == pytest.approx(0.003)
        assert trace.tokens_per_second == pytest.approx(40 / trace.duration_ms * 1000)

        events = await service.get_trace_events(context.trace_id)
        assert events[-1].event_type == "complete"
        assert store.get_active_trace(context.trace_id).is_complete

    async def test_error_records_message_and_code(self, db, store):
        """Error completion stores the error details."""
        service = TraceService(db, store)
        context = await start(service)

        trace = await service.complete_trace(
            context.trace_id,
            TraceResult(status="error", error=TraceErrorInfo(message="boom", code="AI_ERROR")),
        )

        assert trace.status == "error"
        assert trace.error_message == "boom"
        assert trace.error_code == "AI_ERROR"

    async def test_second_completion_is_noop(self, db, store):
        """A terminal trace keeps its first result and gets no second complete event."""
        service = TraceService(db, store)
        context = await start(service)
        await service.complete_trace(context.trace_id, TraceResult(status="success", response="first"))

        trace = await service.complete_trace(
            context.trace_id, TraceResult(status="error", error=TraceErrorInfo(message="late"))
        )

        assert trace.status == "success"
        assert trace.response_content == "first"
        events = await service.get_trace_events(context.trace_id)
        assert sum(1 for e in events if e.event_type == "complete") == 1

    async def test_terminal_trace_rejects_status_updates(self, db, store):
        """Once terminal, update_trace cannot move the status."""
        service = TraceService(db, store)
        context = await start(service)
        await service.complete_trace(context.trace_id, TraceResult(status="cancelled"))

        trace = await service.update_trace(context.trace_id, {"status": "streaming"})

        assert trace.status == "cancelled"


class TestTransitions:
    """Tests for the status transition rule."""

    async def test_transition_rules(self):
        """Forward moves are allowed, terminal states are final."""
        assert can_transition("pending", "streaming")
        assert can_transition("pending", "success")
        assert can_transition("streaming", "error")
        assert not can_transition("streaming", "pending")
        assert not can_transition("success", "error")
        assert not can_transition("timeout", "timeout")


class TestQueries:
    """Tests for listing, metrics, search and the live feed."""

    async def test_metrics_empty_is_all_zero(self, db, store):
        """No matching traces gives zeros everywhere."""
        service = TraceService(db, store)

        metrics = await service.get_trace_metrics(TraceFilters(user_id="nobody"))

        assert metrics.total_traces == 0
        assert metrics.error_rate == 0
        assert metrics.average_duration == 0
        assert metrics.total_cost == 0

    async def test_metrics_over_rows(self, db, store, add_traces):
        """Metrics average durations and count errors as a percentage."""
        await add_traces(
            {"duration_ms": 1000, "total_cost": 0.02},
            {"duration_ms": 3000, "total_cost": 0.03},
            {"duration_ms": 2000, "status": "error", "streaming_enabled": False},
            {"user_id": "user-2"},
        )
        service = TraceService(db, store)

        metrics = await service.get_trace_metrics(TraceFilters(user_id="user-1"))

        assert metrics.total_traces == 3
        assert metrics.successful_traces == 2
        assert metrics.error_traces == 1
        assert metrics.average_duration == pytest.approx(2000)
        assert metrics.error_rate == pytest.approx(100 / 3)
        assert metrics.streaming_rate == pytest.approx(200 / 3)
        assert metrics.total_cost == pytest.approx(0.06)

    async def test_get_traces_paginates(self, db, store, add_traces):
        """Listing reports total count and whether more rows exist."""
        now = utc_now()
        await add_traces(*[{"created_at": now - timedelta(minutes=i)} for i in range(5)])
        service = TraceService(db, store)

        page = await service.get_traces(TraceFilters(limit=2, offset=0))

        assert len(page["traces"]) == 2
        assert page["total_count"] == 5
        assert page["has_more"] is True

    async def test_search_matches_prompt_or_response(self, db, store, add_traces):
        """Search is case-insensitive over prompt and response text."""
        await add_traces(
            {"prompt_content": "Write a haiku about Autumn", "response_content": "Leaves fall"},
            {"prompt_content": "Tell me a joke", "response_content": "An autumn joke"},
            {"prompt_content": "Summarize this", "response_content": "Done"},
        )
        service = TraceService(db, store)

        results = await service.search_traces("AUTUMN")

        assert len(results) == 2

    async def test_search_wildcards_match_literally(self, db, store, add_traces):
        """% and _ in the query are plain characters, not patterns."""
        await add_traces(
            {"prompt_content": "Discount of 50% on plans", "response_content": "Noted"},
            {"prompt_content": "Discount of 500 on plans", "response_content": "Noted"},
            {"prompt_content": "Rename user_id", "response_content": "Done"},
            {"prompt_content": "Rename userXid", "response_content": "Done"},
        )
        service = TraceService(db, store)

        percent = await service.search_traces("50%")
        underscore = await service.search_traces("user_id")

        assert [t.prompt_content for t in percent] == ["Discount of 50% on plans"]
        assert [t.prompt_content for t in underscore] == ["Rename user_id"]

    async def test_live_traces_only_recent_active(self, db, store, add_traces):
        """Live feed counts active traces from the last five minutes."""
        now = utc_now()
        await add_traces(
            {"status": "streaming", "created_at": now - timedelta(minutes=1)},
            {"status": "pending", "created_at": now - timedelta(minutes=30)},
            {"status": "success", "created_at": now - timedelta(minutes=2), "duration_ms": 1000},
            {"status": "error", "created_at": now - timedelta(minutes=2), "duration_ms": 3000},
        )
        service = TraceService(db, store)

        live = await service.get_live_traces()

        assert live["active"] == 1
        assert live["avg_latency"] == pytest.approx(2000)
        assert live["error_rate"] == pytest.approx(50)

    async def test_summarize_empty(self):
        """Summaries of no rows are all zero."""
        assert summarize_traces([]).total_traces == 0
