"""Trace-context propagation middleware."""

import logging
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.services.tracing import (
    PARENT_TRACE_ID_HEADER,
    SESSION_ID_HEADER,
    TRACE_ID_HEADER,
    clear_current_trace,
    get_trace_store,
    set_current_trace,
)

logger = logging.getLogger(__name__)


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Binds ``x-trace-id``/``x-session-id``/``x-parent-trace-id`` request headers
    to the request's context and echoes them on the response.

    Routes that create a new trace set their own headers, which take precedence.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        context = get_trace_store().extract_trace_from_headers(request.headers)
        if context is not None:
            set_current_trace(context.trace_id, context.session_id, context.parent_trace_id)
            request.state.trace_context = context
            logger.debug(f"Request {request.method} {request.url.path} bound to trace {context.trace_id}")

        try:
            response = await call_next(request)
        finally:
            clear_current_trace()

        if context is not None:
            response.headers.setdefault(TRACE_ID_HEADER, context.trace_id)
            response.headers.setdefault(SESSION_ID_HEADER, context.session_id)
            if context.parent_trace_id:
                response.headers.setdefault(PARENT_TRACE_ID_HEADER, context.parent_trace_id)
        return response
