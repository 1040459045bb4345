"""Tracing schemas: trace lifecycle payloads, filters and read models."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

TerminalStatus = Literal["success", "error", "cancelled"]
TraceStatusValue = Literal["pending", "streaming", "success", "error", "cancelled"]
SourceValue = Literal["playground", "api", "test"]


class TokensUsed(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class CostCalculation(BaseModel):
    """Cost of a trace in USD."""

    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0


class PerformanceMetrics(BaseModel):
    duration_ms: int | None = None
    first_token_latency_ms: int | None = None
    tokens_per_second: float | None = None


class QualityMetrics(BaseModel):
    # 0-5 in the trace viewer, 0-1 in model statistics
    score: float | None = Field(None, ge=0, le=5)
    user_rating: int | None = Field(None, ge=1, le=5)


class TraceErrorInfo(BaseModel):
    message: str
    code: str | None = None
    stack: str | None = None


class TraceResult(BaseModel):
    """Final outcome handed to ``complete_trace``."""

    status: TerminalStatus
    response: str | None = None
    tokens_used: TokensUsed | None = None
    cost_calculation: CostCalculation | None = None
    performance_metrics: PerformanceMetrics | None = None
    quality_metrics: QualityMetrics | None = None
    error: TraceErrorInfo | None = None
    langfuse_trace_id: str | None = None
    langfuse_observation_id: str | None = None
    streaming_enabled: bool | None = None


class TraceStartRequest(BaseModel):
    """Request to open a trace for a caller-driven generation."""

    prompt_content: str = Field(..., min_length=1, max_length=10000)
    model: str = Field(..., min_length=1, max_length=100)
    system_prompt: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    source: SourceValue = "api"
    prompt_id: str | None = None
    session_id: str | None = None
    parent_trace_id: str | None = None


class TraceStartResponse(BaseModel):
    trace_id: str
    session_id: str
    start_time: int  # epoch ms


class TraceUpdateRequest(BaseModel):
    """Partial update of a trace row. Unset fields are left untouched."""

    status: TraceStatusValue | None = None
    response_content: str | None = None
    first_token_latency_ms: int | None = Field(None, ge=0)
    streaming_enabled: bool | None = None
    tokens_used: TokensUsed | None = None
    cost_calculation: CostCalculation | None = None
    quality_score: float | None = Field(None, ge=0, le=5)
    user_rating: int | None = Field(None, ge=1, le=5)
    error_message: str | None = None
    error_code: str | None = None
    langfuse_trace_id: str | None = None
    langfuse_observation_id: str | None = None
    metadata: dict[str, Any] | None = None


class TraceFilters(BaseModel):
    """Filter predicates and pagination for trace queries."""

    user_id: str | None = None
    model: str | None = None
    status: TraceStatusValue | None = None
    source: SourceValue | None = None
    session_id: str | None = None
    prompt_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_duration: int | None = None
    max_duration: int | None = None
    min_cost: float | None = None
    max_cost: float | None = None
    has_error: bool | None = None
    streaming: bool | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)
    sort_by: Literal["created_at", "duration_ms", "tokens_per_second", "first_token_latency_ms"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class TraceResponse(BaseModel):
    """A persisted trace."""

    id: UUID
    trace_id: str
    parent_trace_id: str | None = None
    session_id: str
    user_id: str
    prompt_id: str | None = None
    source: str
    model_id: str
    prompt_content: str
    system_prompt: str | None = None
    parameters: dict = Field(default_factory=dict)
    response_content: str | None = None
    tokens_used: dict | None = None
    cost_calculation: dict | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    first_token_latency_ms: int | None = None
    tokens_per_second: float | None = None
    streaming_enabled: bool
    status: str
    error_message: str | None = None
    error_code: str | None = None
    quality_score: float | None = None
    user_rating: int | None = None
    langfuse_trace_id: str | None = None
    langfuse_observation_id: str | None = None
    trace_version: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TraceEventResponse(BaseModel):
    """A single trace event."""

    id: UUID
    trace_id: str
    event_type: str
    event_data: dict = Field(default_factory=dict)
    timestamp: datetime
    sequence_number: int

    class Config:
        from_attributes = True


class TraceDetailResponse(BaseModel):
    """A trace with its ordered events."""

    trace: TraceResponse
    events: list[TraceEventResponse]


class TraceMetrics(BaseModel):
    """Point-in-time metrics over a filtered set of traces."""

    total_traces: int = 0
    successful_traces: int = 0
    error_traces: int = 0
    average_duration: float = 0.0
    average_latency: float = 0.0
    total_cost: float = 0.0
    average_tokens_per_second: float = 0.0
    error_rate: float = 0.0  # percent
    streaming_rate: float = 0.0  # percent


class TraceSearchSummary(BaseModel):
    query: str | None = None
    returned: int
    total_count: int
    has_more: bool


class TraceSearchResponse(BaseModel):
    """Response for trace search."""

    traces: list[TraceResponse]
    summary: TraceSearchSummary
    metrics: TraceMetrics | None = None


class LiveTracesResponse(BaseModel):
    """Snapshot for real-time dashboards."""

    active: int
    avg_latency: float
    error_rate: float
    traces: list[TraceResponse]
    registry: dict[str, int] = Field(default_factory=dict)
