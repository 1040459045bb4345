"""Tracing API endpoints."""

import logging
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import (
    CurrentUser,
    get_current_user,
    get_trace_analytics,
    get_trace_service,
    resolve_user_scope,
)
from app.models import Trace
from app.schemas.analytics import MetricsQueryResponse
from app.schemas.tracing import (
    LiveTracesResponse,
    SourceValue,
    TraceDetailResponse,
    TraceEventResponse,
    TraceFilters,
    TraceResponse,
    TraceResult,
    TraceSearchResponse,
    TraceSearchSummary,
    TraceStartRequest,
    TraceStartResponse,
    TraceStatusValue,
    TraceUpdateRequest,
)
from app.services.analytics import TraceAnalytics
from app.services.tracing import (
    AnalyticsQueryError,
    TraceNotFoundError,
    TracePersistenceError,
    TraceService,
)
from app.services.tracing.service import SEARCH_FILTER_FIELDS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracing", tags=["tracing"])

PAGING_FIELDS = {"limit", "offset", "sort_by", "sort_order"}


def trace_filters(
    user: Annotated[CurrentUser, Depends(get_current_user)],
    user_id: str | None = None,
    model: str | None = None,
    status_filter: Annotated[TraceStatusValue | None, Query(alias="status")] = None,
    source: SourceValue | None = None,
    session_id: str | None = None,
    prompt_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    min_duration: Annotated[int | None, Query(ge=0)] = None,
    max_duration: Annotated[int | None, Query(ge=0)] = None,
    min_cost: Annotated[float | None, Query(ge=0)] = None,
    max_cost: Annotated[float | None, Query(ge=0)] = None,
    has_error: bool | None = None,
    streaming: bool | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    sort_by: Literal[
        "created_at", "duration_ms", "tokens_per_second", "first_token_latency_ms"
    ] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
) -> TraceFilters:
    """Trace filters from query parameters, scoped to what the caller may see."""
    return TraceFilters(
        user_id=resolve_user_scope(user, user_id),
        model=model,
        status=status_filter,
        source=source,
        session_id=session_id,
        prompt_id=prompt_id,
        start_date=start_date,
        end_date=end_date,
        min_duration=min_duration,
        max_duration=max_duration,
        min_cost=min_cost,
        max_cost=max_cost,
        has_error=has_error,
        streaming=streaming,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )


async def _owned_trace(service: TraceService, trace_id: str, user: CurrentUser) -> Trace:
    """Load a trace the caller may access or raise 404."""
    try:
        trace = await service.get_trace(trace_id)
    except TracePersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    if trace is None or (not user.is_admin and trace.user_id != user.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Trace {trace_id} not found",
        )
    return trace


@router.post("/start", response_model=TraceStartResponse, status_code=status.HTTP_201_CREATED)
async def start_trace(
    request: Request,
    body: TraceStartRequest,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TraceService, Depends(get_trace_service)],
) -> TraceStartResponse:
    """Open a trace for a generation the caller drives itself."""
    try:
        context = await service.start_trace(
            user_id=user.user_id,
            model=body.model,
            prompt_content=body.prompt_content,
            system_prompt=body.system_prompt,
            parameters=body.parameters,
            source=body.source,
            prompt_id=body.prompt_id,
            session_id=body.session_id,
            parent_trace_id=body.parent_trace_id,
            user_agent=request.headers.get("user-agent"),
            ip_address=request.client.host if request.client else None,
        )
    except TracePersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return TraceStartResponse(
        trace_id=context.trace_id,
        session_id=context.session_id,
        start_time=context.start_time,
    )


@router.get("/search", response_model=TraceSearchResponse)
async def search_traces(
    filters: Annotated[TraceFilters, Depends(trace_filters)],
    service: Annotated[TraceService, Depends(get_trace_service)],
    q: Annotated[str | None, Query(max_length=500)] = None,
    include_metrics: bool = False,
) -> TraceSearchResponse:
    """List traces by filters, or full-text search prompts and responses with ``q``.

    A text search only takes the user, model and status filters; passing any
    other filter with ``q`` is a 400.
    """
    if q:
        unsupported = sorted(
            set(filters.model_dump(exclude_none=True, exclude=PAGING_FIELDS))
            - SEARCH_FILTER_FIELDS
        )
        if unsupported:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Filters not supported with q: {', '.join(unsupported)}",
            )

    try:
        if q:
            traces = await service.search_traces(q, filters)
            total_count, has_more = len(traces), False
        else:
            page = await service.get_traces(filters)
            traces = page["traces"]
            total_count, has_more = page["total_count"], page["has_more"]
        metrics = await service.get_trace_metrics(filters) if include_metrics else None
    except TracePersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return TraceSearchResponse(
        traces=[TraceResponse.model_validate(t) for t in traces],
        summary=TraceSearchSummary(
            query=q,
            returned=len(traces),
            total_count=total_count,
            has_more=has_more,
        ),
        metrics=metrics,
    )


@router.get("/metrics", response_model=MetricsQueryResponse)
async def get_metrics(
    filters: Annotated[TraceFilters, Depends(trace_filters)],
    analytics: Annotated[TraceAnalytics, Depends(get_trace_analytics)],
    time_range: Literal["1h", "24h", "7d", "30d", "90d"] = "24h",
    group_by: Literal["model", "source", "hour", "day", "user"] | None = None,
    include_hourly: bool = False,
    include_comparison: bool = False,
) -> MetricsQueryResponse:
    """Aggregated metrics for a preset or explicit time range."""
    try:
        return await analytics.query_metrics(
            filters,
            time_range=time_range,
            group_by=group_by,
            include_hourly=include_hourly,
            include_comparison=include_comparison,
        )
    except (AnalyticsQueryError, TracePersistenceError) as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.get("/live", response_model=LiveTracesResponse)
async def get_live_traces(
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TraceService, Depends(get_trace_service)],
) -> LiveTracesResponse:
    """Active traces and rolling health numbers for a polling dashboard."""
    snapshot = await service.get_live_traces()
    traces = snapshot["traces"]
    if not user.is_admin:
        traces = [t for t in traces if t.user_id == user.user_id]
    return LiveTracesResponse(
        active=snapshot["active"],
        avg_latency=snapshot["avg_latency"],
        error_rate=snapshot["error_rate"],
        traces=[TraceResponse.model_validate(t) for t in traces],
        registry={
            "active_traces": service.store.get_active_traces_count(),
            "active_spans": service.store.get_active_spans_count(),
        },
    )


@router.get("/{trace_id}", response_model=TraceDetailResponse)
async def get_trace(
    trace_id: str,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TraceService, Depends(get_trace_service)],
) -> TraceDetailResponse:
    """Get a trace with its ordered events."""
    trace = await _owned_trace(service, trace_id, user)
    try:
        events = await service.get_trace_events(trace_id)
    except TracePersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return TraceDetailResponse(
        trace=TraceResponse.model_validate(trace),
        events=[TraceEventResponse.model_validate(e) for e in events],
    )


@router.patch("/{trace_id}", response_model=TraceResponse)
async def update_trace(
    trace_id: str,
    body: TraceUpdateRequest,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TraceService, Depends(get_trace_service)],
) -> TraceResponse:
    """Partially update a trace."""
    await _owned_trace(service, trace_id, user)
    try:
        trace = await service.update_trace(trace_id, body)
    except TraceNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Trace {trace_id} not found")
    except TracePersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return TraceResponse.model_validate(trace)


@router.post("/{trace_id}/complete", response_model=TraceResponse)
async def complete_trace(
    trace_id: str,
    body: TraceResult,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: Annotated[TraceService, Depends(get_trace_service)],
) -> TraceResponse:
    """Finalize a trace. Completing an already finalized trace returns it unchanged."""
    await _owned_trace(service, trace_id, user)
    try:
        trace = await service.complete_trace(trace_id, body)
    except TraceNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Trace {trace_id} not found")
    except TracePersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return TraceResponse.model_validate(trace)
