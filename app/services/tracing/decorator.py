"""The @traced_span decorator for timing sub-operations inside a trace.

Usage:
    @traced_span
    async def call_provider(prompt):
        ...

    @traced_span(operation_name="parse_output", capture_args=["format"])
    def parse(text, format):
        ...

When no trace is bound to the current context the function runs untouched.
"""

import asyncio
import functools
from typing import Callable, ParamSpec, TypeVar

from app.services.tracing.context import (
    TraceContextStore,
    get_current_session_id,
    get_current_span_id,
    get_current_trace_id,
    get_trace_store,
    reset_current_span_id,
    set_current_span_id,
)
from app.services.tracing.sanitize import build_input_summary

P = ParamSpec('P')
T = TypeVar('T')


def traced_span(
    func: Callable[P, T] | None = None,
    *,
    operation_name: str | None = None,
    capture_args: list[str] | None = None,
    store: TraceContextStore | None = None,
) -> Callable[P, T] | Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator that opens a span on the current trace for each call.

    Can be used with or without arguments:
        @traced_span
        async def func(): ...

        @traced_span(operation_name="provider.generate")
        async def func(): ...

    Args:
        func: The function to decorate (when used without parentheses)
        operation_name: Span name, defaults to the function's qualified name
        capture_args: Argument names recorded as span tags (None = all)
        store: Trace store to use, defaults to the process-wide store

    Returns:
        Decorated function
    """

    def decorator(fn: Callable[P, T]) -> Callable[P, T]:
        name = operation_name or f"{fn.__module__}.{fn.__qualname__}"

        def _open(args: tuple, kwargs: dict):
            trace_id = get_current_trace_id()
            if trace_id is None:
                return None, None, None
            active_store = store or get_trace_store()
            span = active_store.create_span(trace_id, name, get_current_span_id())
            tags = {"args": build_input_summary(fn, args, kwargs, capture_args)}
            session_id = get_current_session_id()
            if session_id:
                tags["session_id"] = session_id
            active_store.set_span_tags(span.span_id, tags)
            return active_store, span, set_current_span_id(span.span_id)

        def _close(active_store, span, token, error: Exception | None) -> None:
            reset_current_span_id(token)
            if error is None:
                active_store.finish_span(span.span_id, "success")
                return
            active_store.add_span_log(
                span.span_id, "error", str(error)[:500], {"error_type": type(error).__name__}
            )
            active_store.finish_span(
                span.span_id, "error", {"error_type": type(error).__name__}
            )

        if asyncio.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                active_store, span, token = _open(args, kwargs)

                # No trace context - just run the function
                if span is None:
                    return await fn(*args, **kwargs)

                try:
                    result = await fn(*args, **kwargs)
                except Exception as e:
                    _close(active_store, span, token, e)
                    raise
                _close(active_store, span, token, None)
                return result

            return async_wrapper
        else:
            @functools.wraps(fn)
            def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                active_store, span, token = _open(args, kwargs)

                # No trace context - just run the function
                if span is None:
                    return fn(*args, **kwargs)

                try:
                    result = fn(*args, **kwargs)
                except Exception as e:
                    _close(active_store, span, token, e)
                    raise
                _close(active_store, span, token, None)
                return result

            return sync_wrapper

    # Handle both @traced_span and @traced_span() syntax
    if func is not None:
        return decorator(func)
    return decorator
