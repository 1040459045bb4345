"""Pydantic schemas for the tracing API."""

from app.schemas.evaluation import (
    BatchEvaluationRequest,
    BatchEvaluationResponse,
    EvaluationRequest,
    EvaluationResult,
    EvaluatorConfig,
)
from app.schemas.playground import StreamMessage, StreamRequest
from app.schemas.tracing import (
    TraceDetailResponse,
    TraceFilters,
    TraceMetrics,
    TraceResponse,
    TraceResult,
    TraceStartRequest,
    TraceStartResponse,
    TraceUpdateRequest,
)

__all__ = [
    # Tracing
    "TraceStartRequest",
    "TraceStartResponse",
    "TraceUpdateRequest",
    "TraceResult",
    "TraceFilters",
    "TraceMetrics",
    "TraceResponse",
    "TraceDetailResponse",
    # Playground
    "StreamRequest",
    "StreamMessage",
    # Evaluation
    "EvaluationRequest",
    "EvaluationResult",
    "EvaluatorConfig",
    "BatchEvaluationRequest",
    "BatchEvaluationResponse",
]
