"""Playground API endpoints - streamed generations over server-sent events."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.api.deps import CurrentUser, get_current_user, get_streaming_orchestrator
from app.schemas.playground import StreamRequest
from app.services.streaming import (
    GENERIC_ERROR_MESSAGE,
    REQUEST_ERROR,
    StreamingOrchestrator,
)
from app.services.tracing import PARENT_TRACE_ID_HEADER, TracePersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/playground", tags=["playground"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def sse_frame(message: dict[str, Any]) -> str:
    return f"data: {json.dumps(message, default=str)}\n\n"


async def _frames(messages: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async for message in messages:
        yield sse_frame(message)


async def _single_error(error: str, code: str) -> AsyncIterator[str]:
    yield sse_frame({"type": "error", "traceId": None, "data": {"error": error, "code": code}})


@router.post("/stream")
async def stream_generation(
    request: Request,
    body: StreamRequest,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    orchestrator: Annotated[StreamingOrchestrator, Depends(get_streaming_orchestrator)],
) -> StreamingResponse:
    """Stream a generation as ``data: {json}`` frames.

    Message types, in order: ``connected``, ``token``..., optionally
    ``structured`` or ``parse_error``, then ``complete``; or a single
    ``error`` at any point.
    """
    try:
        stream = await orchestrator.open(
            body,
            user_id=user.user_id,
            user_agent=request.headers.get("user-agent"),
            ip_address=request.client.host if request.client else None,
            parent_trace_id=request.headers.get(PARENT_TRACE_ID_HEADER),
        )
    except TracePersistenceError as e:
        logger.error(f"Could not open trace for stream: {e}", exc_info=True)
        return StreamingResponse(
            _single_error(GENERIC_ERROR_MESSAGE, REQUEST_ERROR),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return StreamingResponse(
        _frames(orchestrator.events(stream)),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **stream.headers},
    )
