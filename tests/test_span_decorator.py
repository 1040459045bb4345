"""Tests for the @traced_span decorator."""

import pytest

from app.services.tracing import clear_current_trace, set_current_trace, traced_span


pytestmark = pytest.mark.asyncio


@pytest.fixture
def bound_trace(store):
    """A registered trace bound to the current context."""
    context = store.create_trace(user_id="user-1")
    set_current_trace(context.trace_id, context.session_id)
    yield context
    clear_current_trace()


class TestTracedSpan:
    """Tests for spans opened around calls."""

    async def test_async_call_records_span(self, store, bound_trace):
        """A successful call leaves a finished span with its captured args."""

        @traced_span(operation_name="provider.generate", capture_args=["model"])
        async def generate(prompt: str, model: str) -> str:
            return f"{model}: {prompt}"

        assert await generate("hi", model="gpt-4o-mini") == "gpt-4o-mini: hi"

        spans = store.get_all_active_spans()
        assert len(spans) == 1
        assert spans[0].trace_id == bound_trace.trace_id
        assert spans[0].operation_name == "provider.generate"
        assert spans[0].status == "success"
        assert spans[0].tags["args"] == {"model": "gpt-4o-mini"}
        assert spans[0].tags["session_id"] == bound_trace.session_id

    async def test_sync_error_is_logged_and_reraised(self, store, bound_trace):
        """Failures mark the span as error and still propagate."""

        @traced_span
        def parse(text: str) -> dict:
            raise ValueError("not json")

        with pytest.raises(ValueError):
            parse("{")

        span = store.get_all_active_spans()[0]
        assert span.status == "error"
        assert span.tags["error_type"] == "ValueError"
        assert span.logs[0].message == "not json"
        assert span.operation_name.endswith("parse")

    async def test_nested_spans_link_to_parent(self, store, bound_trace):
        """A span opened inside another records it as parent."""

        @traced_span(operation_name="inner")
        async def inner() -> None:
            return None

        @traced_span(operation_name="outer")
        async def outer() -> None:
            await inner()

        await outer()

        spans = {s.operation_name: s for s in store.get_all_active_spans()}
        assert spans["inner"].parent_span_id == spans["outer"].span_id
        assert spans["outer"].parent_span_id is None

    async def test_no_trace_bound(self, store):
        """Without a bound trace the function runs untouched."""
        clear_current_trace()

        @traced_span
        async def work() -> int:
            return 42

        assert await work() == 42
        assert store.get_active_spans_count() == 0
