"""Unit tests for the in-process trace registry."""

from app.services.tracing import TraceContextStore
from app.services.tracing.context import (
    PARENT_TRACE_ID_HEADER,
    SESSION_ID_HEADER,
    TRACE_ID_HEADER,
    format_trace_id,
    is_valid_trace_id,
)


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


def make_store(clock: FakeClock) -> TraceContextStore:
    return TraceContextStore(
        completed_grace_seconds=5,
        span_grace_seconds=1,
        max_age_seconds=600,
        cleanup_interval_seconds=30,
        clock=clock,
    )


class TestCreateTrace:
    """Tests for registering traces."""

    def test_applies_metadata_defaults(self):
        """New traces default to api source, unknown model and version 1.0."""
        store = make_store(FakeClock())

        trace = store.create_trace(user_id="user-1")

        assert is_valid_trace_id(trace.trace_id)
        assert trace.session_id
        assert trace.metadata["source"] == "api"
        assert trace.metadata["model"] == "unknown"
        assert trace.metadata["version"] == "1.0"
        assert store.get_active_trace(trace.trace_id) is trace

    def test_keeps_caller_metadata(self):
        """Caller metadata wins over defaults and extra keys are kept."""
        store = make_store(FakeClock())

        trace = store.create_trace(
            user_id="user-1",
            session_id="session-9",
            metadata={"source": "playground", "model": "gpt-4o", "experiment": "a"},
        )

        assert trace.session_id == "session-9"
        assert trace.model == "gpt-4o"
        assert trace.source == "playground"
        assert trace.metadata["experiment"] == "a"

    def test_update_deep_merges_metadata(self):
        """Nested metadata updates merge instead of replacing."""
        store = make_store(FakeClock())
        trace = store.create_trace(metadata={"params": {"temperature": 0.2}})

        store.update_trace(trace.trace_id, {"metadata": {"params": {"max_tokens": 10}}})

        assert trace.metadata["params"] == {"temperature": 0.2, "max_tokens": 10}

    def test_update_unknown_trace_is_noop(self):
        """Updating an unregistered trace does nothing."""
        store = make_store(FakeClock())

        store.update_trace("missing", {"metadata": {"a": 1}})

        assert store.get_active_traces_count() == 0


class TestCompletion:
    """Tests for completion and grace-period expiry."""

    def test_completed_trace_readable_during_grace(self):
        """A completed trace stays readable until the grace period passes."""
        clock = FakeClock()
        store = make_store(clock)
        trace = store.create_trace()

        clock.advance(2)
        store.complete_trace(trace.trace_id, {"status": "success"})

        active = store.get_active_trace(trace.trace_id)
        assert active is not None
        assert active.is_complete
        assert active.metadata["duration"] == 2000
        assert active.metadata["result"] == {"status": "success"}

        clock.advance(4.9)
        assert store.get_active_trace(trace.trace_id) is not None

        clock.advance(0.2)
        assert store.get_active_trace(trace.trace_id) is None

    def test_finished_span_expires_after_span_grace(self):
        """Spans use their own shorter grace period."""
        clock = FakeClock()
        store = make_store(clock)
        trace = store.create_trace()
        span = store.create_span(trace.trace_id, "ai_request")

        store.add_span_log(span.span_id, "info", "calling provider")
        store.finish_span(span.span_id, "error", tags={"error": True})

        finished = store.get_span(span.span_id)
        assert finished.status == "error"
        assert finished.tags == {"error": True}
        assert len(finished.logs) == 1

        clock.advance(1)
        assert store.get_span(span.span_id) is None

    def test_cleanup_evicts_stale_entries(self):
        """Entries older than the maximum age are swept even if never completed."""
        clock = FakeClock()
        store = make_store(clock)
        store.create_trace()
        trace = store.create_trace()
        store.create_span(trace.trace_id, "ai_request")

        clock.advance(601)
        removed = store.cleanup()

        assert removed == 3
        assert store.get_active_traces_count() == 0
        assert store.get_active_spans_count() == 0

    def test_listing_skips_expired(self):
        """Listings only return entries still inside their grace period."""
        clock = FakeClock()
        store = make_store(clock)
        kept = store.create_trace(user_id="user-1")
        done = store.create_trace(user_id="user-2")
        span = store.create_span(kept.trace_id, "ai_request")
        store.complete_trace(done.trace_id, {"status": "success"})

        clock.advance(6)

        assert [t.trace_id for t in store.get_all_active_traces()] == [kept.trace_id]
        assert [s.span_id for s in store.get_all_active_spans()] == [span.span_id]


class TestHeaderPropagation:
    """Tests for trace header extraction and injection."""

    def test_no_trace_header_returns_none(self):
        """Requests without a trace id carry no context."""
        store = make_store(FakeClock())

        assert store.extract_trace_from_headers({}) is None

    def test_returns_registered_trace(self):
        """A header naming an active trace resolves to that trace."""
        store = make_store(FakeClock())
        trace = store.create_trace(user_id="user-1")

        found = store.extract_trace_from_headers({TRACE_ID_HEADER: trace.trace_id})

        assert found is trace

    def test_builds_detached_context_for_unknown_trace(self):
        """Unknown trace ids still produce a context from the headers."""
        store = make_store(FakeClock())

        found = store.extract_trace_from_headers({
            TRACE_ID_HEADER: "abc",
            SESSION_ID_HEADER: "session-2",
            PARENT_TRACE_ID_HEADER: "parent-1",
        })

        assert found.trace_id == "abc"
        assert found.session_id == "session-2"
        assert found.parent_trace_id == "parent-1"
        assert store.get_active_traces_count() == 0

    def test_inject_includes_parent_only_when_set(self):
        """Injected headers carry the parent id only when there is one."""
        store = make_store(FakeClock())
        root = store.create_trace()
        child = store.create_trace(parent_trace_id=root.trace_id)

        assert PARENT_TRACE_ID_HEADER not in store.inject_trace_into_headers(root)
        assert store.inject_trace_into_headers(child)[PARENT_TRACE_ID_HEADER] == root.trace_id


class TestTraceIds:
    """Tests for trace id helpers."""

    def test_format_trace_id_shortens(self):
        """Display form is the first eight characters."""
        assert format_trace_id("3f1a9c2e-7b40-4000-8000-000000000001") == "3f1a9c2e"

    def test_is_valid_trace_id(self):
        """Only lowercase uuid-shaped ids are valid."""
        assert is_valid_trace_id("3f1a9c2e-7b40-4000-8000-000000000001")
        assert not is_valid_trace_id("3F1A9C2E-7B40-4000-8000-000000000001")
        assert not is_valid_trace_id(None)
        assert not is_valid_trace_id("short")
