"""Tracing for AI interactions.

Usage:
    from app.services.tracing import TraceService, traced_span

    service = TraceService(db)
    context = await service.start_trace(user_id=user_id, model=model, prompt_content=prompt)
    ...
    await service.complete_trace(context.trace_id, TraceResult(status="success", ...))

    # Time a sub-operation on whatever trace is bound to the current context:
    @traced_span
    async def call_provider(...):
        ...
"""

from app.services.tracing.context import (
    PARENT_TRACE_ID_HEADER,
    SESSION_ID_HEADER,
    TRACE_ID_HEADER,
    TraceContext,
    TraceContextStore,
    TraceSpan,
    clear_current_trace,
    format_trace_id,
    get_current_trace_id,
    get_trace_store,
    is_valid_trace_id,
    set_current_trace,
)
from app.services.tracing.decorator import traced_span
from app.services.tracing.errors import (
    AnalyticsQueryError,
    TraceNotFoundError,
    TracePersistenceError,
    TracingError,
)
from app.services.tracing.service import TraceService, summarize_traces

__all__ = [
    "traced_span",
    "TraceService",
    "summarize_traces",
    "TraceContext",
    "TraceContextStore",
    "TraceSpan",
    "get_trace_store",
    "set_current_trace",
    "clear_current_trace",
    "get_current_trace_id",
    "format_trace_id",
    "is_valid_trace_id",
    "TRACE_ID_HEADER",
    "SESSION_ID_HEADER",
    "PARENT_TRACE_ID_HEADER",
    "TracingError",
    "TracePersistenceError",
    "TraceNotFoundError",
    "AnalyticsQueryError",
]
