"""In-process registry of in-flight traces and spans.

The store is a short-lived cache next to the durable trace rows. Entries are
kept for a grace period after completion so late readers still find them, and
a periodic sweep evicts anything older than the maximum age. The durable store
stays authoritative; nothing here survives a restart.

FastAPI runs sync dependencies in a threadpool, so the maps are guarded by a
lock even though most callers live on the event loop.

Context variables carry the current trace/span ids through async calls, the
same way request-scoped correlation works elsewhere in the app.
"""

import asyncio
import logging
import re
import threading
import time
import uuid
from contextvars import ContextVar
from typing import Any, Callable, Literal, Mapping

from pydantic import BaseModel, Field

from app.config import get_settings

logger = logging.getLogger(__name__)

TRACE_ID_HEADER = "x-trace-id"
SESSION_ID_HEADER = "x-session-id"
PARENT_TRACE_ID_HEADER = "x-parent-trace-id"

_TRACE_ID_PATTERN = re.compile(r"^[a-f0-9-]{36}$")

SpanStatus = Literal["pending", "success", "error"]
LogLevel = Literal["info", "warn", "error", "debug"]


def _now_ms() -> int:
    return int(time.time() * 1000)


class TraceContext(BaseModel):
    """An in-flight trace. Times are epoch milliseconds."""

    trace_id: str
    parent_trace_id: str | None = None
    session_id: str
    user_id: str = ""
    start_time: int
    # source, prompt_id, model, version, user_agent, ip_address plus whatever
    # accrues while the request runs (result, end_time, duration)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def model(self) -> str:
        return self.metadata.get("model", "unknown")

    @property
    def source(self) -> str:
        return self.metadata.get("source", "api")

    @property
    def is_complete(self) -> bool:
        return "end_time" in self.metadata


class TraceLog(BaseModel):
    """A log line attached to a span."""

    timestamp: int
    level: LogLevel
    message: str
    data: dict[str, Any] | None = None


class TraceSpan(BaseModel):
    """A sub-operation inside a trace, e.g. one provider call."""

    span_id: str
    trace_id: str
    parent_span_id: str | None = None
    operation_name: str
    start_time: int
    end_time: int | None = None
    tags: dict[str, Any] = Field(default_factory=dict)
    logs: list[TraceLog] = Field(default_factory=list)
    status: SpanStatus = "pending"


def generate_trace_id() -> str:
    """Generate an id usable for correlation."""
    return str(uuid.uuid4())


def format_trace_id(trace_id: str) -> str:
    """Short form of a trace id for display."""
    return trace_id[:8]


def is_valid_trace_id(trace_id: str | None) -> bool:
    """Check that a trace id looks like a lowercase UUID."""
    return bool(trace_id) and bool(_TRACE_ID_PATTERN.match(trace_id))


def _deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class TraceContextStore:
    """Registry of active traces and spans with TTL cleanup.

    Args:
        completed_grace_seconds: How long a completed trace stays readable
        span_grace_seconds: How long a finished span stays readable
        max_age_seconds: Absolute age after which any entry is evicted
        cleanup_interval_seconds: Period of the background sweep
        clock: Returns epoch milliseconds; injectable for tests
    """

    def __init__(
        self,
        completed_grace_seconds: float | None = None,
        span_grace_seconds: float | None = None,
        max_age_seconds: float | None = None,
        cleanup_interval_seconds: float | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        settings = get_settings()
        self.completed_grace_ms = int(
            1000 * (completed_grace_seconds if completed_grace_seconds is not None
                    else settings.trace_completed_grace_seconds)
        )
        self.span_grace_ms = int(
            1000 * (span_grace_seconds if span_grace_seconds is not None
                    else settings.span_completed_grace_seconds)
        )
        self.max_age_ms = int(
            1000 * (max_age_seconds if max_age_seconds is not None
                    else settings.trace_max_age_seconds)
        )
        self.cleanup_interval_seconds = (
            cleanup_interval_seconds if cleanup_interval_seconds is not None
            else settings.trace_cleanup_interval_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._traces: dict[str, TraceContext] = {}
        self._spans: dict[str, TraceSpan] = {}
        # id -> epoch ms after which the entry is dropped
        self._trace_expiry: dict[str, int] = {}
        self._span_expiry: dict[str, int] = {}
        self._cleanup_task: asyncio.Task | None = None

    # Traces

    def create_trace(
        self,
        *,
        user_id: str = "",
        session_id: str | None = None,
        parent_trace_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> TraceContext:
        """Register a new trace with a fresh id."""
        metadata = dict(metadata or {})
        base_metadata = {
            "source": metadata.pop("source", None) or "api",
            "prompt_id": metadata.pop("prompt_id", None),
            "model": metadata.pop("model", None) or "unknown",
            "version": metadata.pop("version", None) or "1.0",
            "user_agent": metadata.pop("user_agent", None),
            "ip_address": metadata.pop("ip_address", None),
        }
        base_metadata.update(metadata)

        trace = TraceContext(
            trace_id=generate_trace_id(),
            parent_trace_id=parent_trace_id,
            session_id=session_id or str(uuid.uuid4()),
            user_id=user_id or "",
            start_time=self._clock(),
            metadata=base_metadata,
        )
        with self._lock:
            self._traces[trace.trace_id] = trace
        return trace

    def get_active_trace(self, trace_id: str) -> TraceContext | None:
        """Look up a trace without touching durable storage."""
        with self._lock:
            self._evict_expired_locked(self._clock())
            return self._traces.get(trace_id)

    def update_trace(self, trace_id: str, updates: Mapping[str, Any]) -> None:
        """Merge fields into a trace; metadata is deep-merged. No-op if absent."""
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                return
            for key, value in updates.items():
                if key == "metadata":
                    trace.metadata = _deep_merge(trace.metadata, value or {})
                elif key in TraceContext.model_fields and key != "trace_id":
                    setattr(trace, key, value)

    def complete_trace(self, trace_id: str, result: Mapping[str, Any]) -> None:
        """Attach the result and timing, then schedule removal after the grace period."""
        now = self._clock()
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                return
            trace.metadata = {
                **trace.metadata,
                "result": dict(result),
                "end_time": now,
                "duration": now - trace.start_time,
            }
            self._trace_expiry[trace_id] = now + self.completed_grace_ms

    # Spans

    def create_span(
        self,
        trace_id: str,
        operation_name: str,
        parent_span_id: str | None = None,
    ) -> TraceSpan:
        """Open a span inside a trace."""
        span = TraceSpan(
            span_id=str(uuid.uuid4()),
            trace_id=trace_id,
            parent_span_id=parent_span_id,
            operation_name=operation_name,
            start_time=self._clock(),
        )
        with self._lock:
            self._spans[span.span_id] = span
        return span

    def get_span(self, span_id: str) -> TraceSpan | None:
        with self._lock:
            self._evict_expired_locked(self._clock())
            return self._spans.get(span_id)

    def finish_span(
        self,
        span_id: str,
        status: Literal["success", "error"] = "success",
        tags: Mapping[str, Any] | None = None,
    ) -> None:
        """Close a span and schedule its removal."""
        now = self._clock()
        with self._lock:
            span = self._spans.get(span_id)
            if span is None:
                return
            span.end_time = now
            span.status = status
            if tags:
                span.tags = {**span.tags, **tags}
            self._span_expiry[span_id] = now + self.span_grace_ms

    def add_span_log(
        self,
        span_id: str,
        level: LogLevel,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        with self._lock:
            span = self._spans.get(span_id)
            if span is None:
                return
            span.logs.append(
                TraceLog(
                    timestamp=self._clock(),
                    level=level,
                    message=message,
                    data=dict(data) if data is not None else None,
                )
            )

    def set_span_tags(self, span_id: str, tags: Mapping[str, Any]) -> None:
        with self._lock:
            span = self._spans.get(span_id)
            if span is not None:
                span.tags = {**span.tags, **tags}

    # Monitoring

    def get_active_traces_count(self) -> int:
        with self._lock:
            self._evict_expired_locked(self._clock())
            return len(self._traces)

    def get_active_spans_count(self) -> int:
        with self._lock:
            self._evict_expired_locked(self._clock())
            return len(self._spans)

    def get_all_active_traces(self) -> list[TraceContext]:
        with self._lock:
            self._evict_expired_locked(self._clock())
            return list(self._traces.values())

    def get_all_active_spans(self) -> list[TraceSpan]:
        with self._lock:
            self._evict_expired_locked(self._clock())
            return list(self._spans.values())

    # Header propagation

    def extract_trace_from_headers(self, headers: Mapping[str, str]) -> TraceContext | None:
        """Resolve the trace referenced by request headers.

        Returns the registered trace when it is still active, a detached
        context built from the headers when it is not, and None when the
        request carries no trace id.
        """
        trace_id = headers.get(TRACE_ID_HEADER)
        if not trace_id:
            return None

        active = self.get_active_trace(trace_id)
        if active is not None:
            return active

        return TraceContext(
            trace_id=trace_id,
            parent_trace_id=headers.get(PARENT_TRACE_ID_HEADER) or None,
            session_id=headers.get(SESSION_ID_HEADER) or str(uuid.uuid4()),
            user_id="",
            start_time=self._clock(),
            metadata={"source": "api", "model": "unknown", "version": "1.0"},
        )

    @staticmethod
    def inject_trace_into_headers(trace: TraceContext) -> dict[str, str]:
        """Headers that let the next hop correlate with this trace."""
        headers = {
            TRACE_ID_HEADER: trace.trace_id,
            SESSION_ID_HEADER: trace.session_id,
        }
        if trace.parent_trace_id:
            headers[PARENT_TRACE_ID_HEADER] = trace.parent_trace_id
        return headers

    # Cleanup

    def cleanup(self) -> int:
        """Evict expired entries and anything older than the maximum age.

        Returns:
            Number of traces and spans removed
        """
        now = self._clock()
        with self._lock:
            removed = self._evict_expired_locked(now)

            stale_traces = [
                trace_id for trace_id, trace in self._traces.items()
                if now - trace.start_time > self.max_age_ms
            ]
            for trace_id in stale_traces:
                self._traces.pop(trace_id, None)
                self._trace_expiry.pop(trace_id, None)

            stale_spans = [
                span_id for span_id, span in self._spans.items()
                if now - span.start_time > self.max_age_ms
            ]
            for span_id in stale_spans:
                self._spans.pop(span_id, None)
                self._span_expiry.pop(span_id, None)

        removed += len(stale_traces) + len(stale_spans)
        if removed:
            logger.debug(f"Trace store cleanup removed {removed} entries")
        return removed

    def _evict_expired_locked(self, now: int) -> int:
        removed = 0
        for trace_id, expires_at in list(self._trace_expiry.items()):
            if expires_at <= now:
                self._traces.pop(trace_id, None)
                del self._trace_expiry[trace_id]
                removed += 1
        for span_id, expires_at in list(self._span_expiry.items()):
            if expires_at <= now:
                self._spans.pop(span_id, None)
                del self._span_expiry[span_id]
                removed += 1
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Trace store cleanup failed: {e}", exc_info=True)

    def start_cleanup_task(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info(
                f"Trace store cleanup running every {self.cleanup_interval_seconds}s"
            )

    async def stop_cleanup_task(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        task = self._cleanup_task
        self._cleanup_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


_store: TraceContextStore | None = None


def get_trace_store() -> TraceContextStore:
    """Get the process-wide trace store."""
    global _store
    if _store is None:
        _store = TraceContextStore()
    return _store


# Request-scoped correlation - automatically propagates through async calls
_current_trace_id: ContextVar[str | None] = ContextVar("current_trace_id", default=None)
_current_session_id: ContextVar[str | None] = ContextVar("current_session_id", default=None)
_current_parent_trace_id: ContextVar[str | None] = ContextVar(
    "current_parent_trace_id", default=None
)
_current_span_id: ContextVar[str | None] = ContextVar("current_span_id", default=None)


def set_current_trace(
    trace_id: str | None,
    session_id: str | None = None,
    parent_trace_id: str | None = None,
) -> None:
    """Bind the trace being served to the current async context."""
    _current_trace_id.set(trace_id)
    _current_session_id.set(session_id)
    _current_parent_trace_id.set(parent_trace_id)


def get_current_trace_id() -> str | None:
    return _current_trace_id.get()


def get_current_session_id() -> str | None:
    return _current_session_id.get()


def get_current_span_id() -> str | None:
    return _current_span_id.get()


def set_current_span_id(span_id: str | None) -> Any:
    """Set the current span id. Returns a token for ``reset_current_span_id``."""
    return _current_span_id.set(span_id)


def reset_current_span_id(token: Any) -> None:
    _current_span_id.reset(token)


def clear_current_trace() -> None:
    """Clear all request-scoped correlation."""
    _current_trace_id.set(None)
    _current_session_id.set(None)
    _current_parent_trace_id.set(None)
    _current_span_id.set(None)
