"""Trace persistence service - the single path between in-flight traces and the database.

Every durable step (create, update, complete, event) commits on its own. The
three finalization writes are not atomic across each other; readers treat the
trace row's status as ground truth, never event presence.
"""

import logging
from datetime import timedelta
from typing import Any, Mapping

from pydantic import BaseModel
from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai.pricing import CostBreakdown, calculate_model_cost
from app.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Trace,
    TraceEvent,
    TraceEventType,
    TraceStatus,
)
from app.schemas.tracing import TraceFilters, TraceMetrics, TraceResult, TraceUpdateRequest
from app.services.tracing.context import TraceContext, TraceContextStore, get_trace_store
from app.services.tracing.errors import TraceNotFoundError, TracePersistenceError
from app.services.tracing.sanitize import sanitize_event_data
from app.utils.time import ensure_utc, from_epoch_ms, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

TRACE_VERSION = "1.0"

# Window for the live dashboard feed
LIVE_WINDOW = timedelta(minutes=5)
LIVE_TRACE_LIMIT = 100

DEFAULT_SEARCH_LIMIT = 50

# Filters that apply to full-text search; the rest only apply to listings
SEARCH_FILTER_FIELDS = frozenset({"user_id", "model", "status"})

# Columns a partial update may touch
UPDATABLE_FIELDS = frozenset({
    "status",
    "response_content",
    "first_token_latency_ms",
    "streaming_enabled",
    "tokens_used",
    "cost_calculation",
    "quality_score",
    "user_rating",
    "error_message",
    "error_code",
    "langfuse_trace_id",
    "langfuse_observation_id",
})


def can_transition(current: str, new: str) -> bool:
    """Status moves pending -> streaming -> terminal; terminal never moves again."""
    if current == new:
        return current not in TERMINAL_STATUSES
    if current in TERMINAL_STATUSES:
        return False
    if current == TraceStatus.STREAMING.value and new == TraceStatus.PENDING.value:
        return False
    return True


def _trace_cost(trace: Any) -> float:
    cost = (getattr(trace, "cost_calculation", None) or {}).get("total_cost") or 0
    try:
        return float(cost)
    except (TypeError, ValueError):
        return 0.0


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def summarize_traces(traces: list[Any]) -> TraceMetrics:
    """Compute TraceMetrics over trace rows. Empty input gives all zeros."""
    total = len(traces)
    if total == 0:
        return TraceMetrics()

    successful = sum(1 for t in traces if t.status == TraceStatus.SUCCESS.value)
    errors = sum(1 for t in traces if t.status == TraceStatus.ERROR.value)
    streaming = sum(1 for t in traces if t.streaming_enabled)

    return TraceMetrics(
        total_traces=total,
        successful_traces=successful,
        error_traces=errors,
        average_duration=_mean([t.duration_ms for t in traces if t.duration_ms]),
        average_latency=_mean(
            [t.first_token_latency_ms for t in traces if t.first_token_latency_ms]
        ),
        total_cost=sum(_trace_cost(t) for t in traces),
        average_tokens_per_second=_mean(
            [t.tokens_per_second for t in traces if t.tokens_per_second]
        ),
        error_rate=errors / total * 100,
        streaming_rate=streaming / total * 100,
    )


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so they match literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def apply_trace_filters(query: Select, filters: TraceFilters, fields: set[str] | None = None) -> Select:
    """Add WHERE clauses for the set filters.

    Args:
        query: A select over Trace
        filters: Filter values
        fields: Restrict to these filter names (None = all)
    """

    def wanted(name: str) -> bool:
        return getattr(filters, name) is not None and (fields is None or name in fields)

    if wanted("user_id"):
        query = query.where(Trace.user_id == filters.user_id)
    if wanted("model"):
        query = query.where(Trace.model_id == filters.model)
    if wanted("status"):
        query = query.where(Trace.status == filters.status)
    if wanted("source"):
        query = query.where(Trace.source == filters.source)
    if wanted("session_id"):
        query = query.where(Trace.session_id == filters.session_id)
    if wanted("prompt_id"):
        query = query.where(Trace.prompt_id == filters.prompt_id)
    if wanted("start_date"):
        query = query.where(Trace.created_at >= ensure_utc(filters.start_date))
    if wanted("end_date"):
        query = query.where(Trace.created_at <= ensure_utc(filters.end_date))
    if wanted("min_duration"):
        query = query.where(Trace.duration_ms >= filters.min_duration)
    if wanted("max_duration"):
        query = query.where(Trace.duration_ms <= filters.max_duration)
    if wanted("min_cost"):
        query = query.where(Trace.cost_calculation["total_cost"].as_float() >= filters.min_cost)
    if wanted("max_cost"):
        query = query.where(Trace.cost_calculation["total_cost"].as_float() <= filters.max_cost)
    if wanted("has_error"):
        if filters.has_error:
            query = query.where(Trace.status == TraceStatus.ERROR.value)
        else:
            query = query.where(Trace.status != TraceStatus.ERROR.value)
    if wanted("streaming"):
        query = query.where(Trace.streaming_enabled == filters.streaming)
    return query


class TraceService:
    """Creates, updates, completes and queries durable traces.

    Args:
        db: Database session; every durable step commits on it
        store: In-memory registry mirrored alongside the rows
    """

    def __init__(self, db: AsyncSession, store: TraceContextStore | None = None):
        self.db = db
        self.store = store or get_trace_store()

    # Writes

    async def start_trace(
        self,
        *,
        user_id: str,
        model: str,
        prompt_content: str,
        system_prompt: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        source: str = "api",
        prompt_id: str | None = None,
        session_id: str | None = None,
        parent_trace_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TraceContext:
        """Register a trace in memory, insert its row as pending and log a start event.

        Raises:
            TracePersistenceError: If the row could not be inserted
        """
        context = self.store.create_trace(
            user_id=user_id,
            session_id=session_id,
            parent_trace_id=parent_trace_id,
            metadata={
                "source": source,
                "prompt_id": prompt_id,
                "model": model,
                "version": TRACE_VERSION,
                "user_agent": user_agent,
                "ip_address": ip_address,
            },
        )
        parameters = dict(parameters or {})

        trace = Trace(
            trace_id=context.trace_id,
            parent_trace_id=parent_trace_id,
            session_id=context.session_id,
            user_id=user_id,
            prompt_id=prompt_id,
            source=context.source,
            model_id=model,
            prompt_content=prompt_content,
            system_prompt=system_prompt,
            parameters=parameters,
            start_time=from_epoch_ms(context.start_time),
            status=TraceStatus.PENDING.value,
            streaming_enabled=False,
            user_agent=user_agent,
            ip_address=ip_address,
            trace_version=TRACE_VERSION,
        )
        self.db.add(trace)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.store.complete_trace(
                context.trace_id, {"status": TraceStatus.ERROR.value, "persisted": False}
            )
            logger.error(f"Failed to create trace {context.trace_id}: {e}", exc_info=True)
            raise TracePersistenceError(f"Failed to create trace: {e}") from e

        logger.info(
            f"Started trace {context.trace_id} (model={model}, source={context.source}, "
            f"user={user_id})"
        )

        await self.add_trace_event(
            context.trace_id,
            TraceEventType.START,
            {
                "model": model,
                "prompt_length": len(prompt_content),
                "has_system_prompt": bool(system_prompt),
                "parameters": parameters,
            },
        )
        return context

    async def update_trace(
        self, trace_id: str, updates: TraceUpdateRequest | Mapping[str, Any]
    ) -> Trace:
        """Apply a partial update to a trace row and its in-memory context.

        A status change that would leave a terminal status, or go back from
        streaming to pending, is dropped; the remaining fields still apply.

        Raises:
            TraceNotFoundError: If no row exists
            TracePersistenceError: If the update failed
        """
        if isinstance(updates, BaseModel):
            values = updates.model_dump(exclude_unset=True)
        else:
            values = dict(updates)

        metadata = values.pop("metadata", None)
        if metadata:
            self.store.update_trace(trace_id, {"metadata": metadata})

        trace = await self._load(trace_id)

        new_status = values.get("status")
        if new_status is not None and not can_transition(trace.status, new_status):
            logger.info(
                f"Ignoring status change {trace.status} -> {new_status} for trace {trace_id}"
            )
            values.pop("status")

        for key, value in values.items():
            if key not in UPDATABLE_FIELDS:
                continue
            setattr(trace, key, value)
        trace.updated_at = utc_now()

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to update trace {trace_id}: {e}", exc_info=True)
            raise TracePersistenceError(f"Failed to update trace: {e}") from e
        return trace

    async def complete_trace(self, trace_id: str, result: TraceResult) -> Trace:
        """Finalize a trace: terminal status, metrics, complete event, registry expiry.

        Calling it again on a terminal trace is a no-op that returns the row.

        Raises:
            TraceNotFoundError: If no row exists
            TracePersistenceError: If the final write failed
        """
        trace = await self._load(trace_id)
        if trace.status in TERMINAL_STATUSES:
            logger.info(f"Trace {trace_id} already finalized as {trace.status}")
            return trace

        end_time = utc_now()
        active = self.store.get_active_trace(trace_id)
        start_ms = active.start_time if active is not None else to_epoch_ms(trace.start_time)
        duration_ms = max(0, to_epoch_ms(end_time) - start_ms)

        tokens_used = result.tokens_used.model_dump() if result.tokens_used else None
        total_tokens = result.tokens_used.total if result.tokens_used else 0
        perf = result.performance_metrics

        tokens_per_second = None
        if total_tokens > 0 and duration_ms > 0:
            tokens_per_second = total_tokens / duration_ms * 1000
        elif perf is not None:
            tokens_per_second = perf.tokens_per_second

        values: dict[str, Any] = {
            "status": result.status,
            "end_time": end_time,
            "duration_ms": duration_ms,
            "tokens_used": tokens_used,
            "cost_calculation": (
                result.cost_calculation.model_dump() if result.cost_calculation else None
            ),
            "tokens_per_second": tokens_per_second,
            "error_message": result.error.message if result.error else None,
            "error_code": result.error.code if result.error else None,
            "updated_at": end_time,
        }
        if result.response is not None:
            values["response_content"] = result.response
        if perf is not None and perf.first_token_latency_ms is not None:
            values["first_token_latency_ms"] = perf.first_token_latency_ms
        if result.quality_metrics is not None:
            values["quality_score"] = result.quality_metrics.score
            values["user_rating"] = result.quality_metrics.user_rating
        if result.langfuse_trace_id is not None:
            values["langfuse_trace_id"] = result.langfuse_trace_id
        if result.langfuse_observation_id is not None:
            values["langfuse_observation_id"] = result.langfuse_observation_id
        if result.streaming_enabled is not None:
            values["streaming_enabled"] = result.streaming_enabled

        # Guarded on a non-terminal status so a racing finalizer cannot overwrite
        statement = (
            update(Trace)
            .where(Trace.trace_id == trace_id)
            .where(Trace.status.in_(sorted(ACTIVE_STATUSES)))
            .values(**values)
        )
        try:
            outcome = await self.db.execute(statement)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to complete trace {trace_id}: {e}", exc_info=True)
            raise TracePersistenceError(f"Failed to complete trace: {e}") from e

        if outcome.rowcount == 0:
            logger.info(f"Trace {trace_id} was finalized concurrently, keeping first result")
            return await self._load(trace_id)

        await self.add_trace_event(
            trace_id,
            TraceEventType.COMPLETE,
            {
                "status": result.status,
                "duration_ms": duration_ms,
                "tokens_used": tokens_used,
                "cost": result.cost_calculation.total_cost if result.cost_calculation else None,
                "error": result.error.message if result.error else None,
            },
        )
        self.store.complete_trace(trace_id, result.model_dump(exclude_none=True))

        logger.info(
            f"Completed trace {trace_id}: status={result.status}, duration={duration_ms}ms, "
            f"tokens={total_tokens}"
        )
        return await self._load(trace_id)

    async def add_trace_event(
        self,
        trace_id: str,
        event_type: TraceEventType | str,
        event_data: Mapping[str, Any] | None = None,
        sequence_number: int | None = None,
    ) -> TraceEvent | None:
        """Append an event to a trace. Failures are logged, never raised.

        Without an explicit sequence number the next one is read as
        max + 1, which two concurrent writers to the same trace can both
        observe.
        """
        event_type = event_type.value if isinstance(event_type, TraceEventType) else event_type
        try:
            if sequence_number is None:
                result = await self.db.execute(
                    select(func.max(TraceEvent.sequence_number)).where(
                        TraceEvent.trace_id == trace_id
                    )
                )
                sequence_number = (result.scalar() or 0) + 1

            event = TraceEvent(
                trace_id=trace_id,
                event_type=event_type,
                event_data=sanitize_event_data(event_data),
                timestamp=utc_now(),
                sequence_number=sequence_number,
            )
            self.db.add(event)
            await self.db.commit()
            return event
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                f"Failed to add {event_type} event to trace {trace_id}: {e}", exc_info=True
            )
            return None

    async def calculate_and_store_trace_cost(
        self,
        trace_id: str,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> CostBreakdown:
        """Price a generation and write cost plus token usage onto the trace."""
        cost = calculate_model_cost(provider, model, input_tokens, output_tokens)
        await self.update_trace(
            trace_id,
            {
                "cost_calculation": cost.model_dump(),
                "tokens_used": {
                    "input": input_tokens,
                    "output": output_tokens,
                    "total": input_tokens + output_tokens,
                },
            },
        )
        return cost

    # Reads

    async def get_trace(self, trace_id: str) -> Trace | None:
        """Get a trace row by trace id."""
        try:
            result = await self.db.execute(
                select(Trace)
                .where(Trace.trace_id == trace_id)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            raise TracePersistenceError(f"Failed to get trace: {e}") from e
        return result.scalar_one_or_none()

    async def get_trace_events(self, trace_id: str) -> list[TraceEvent]:
        """Events for a trace, ordered by sequence number then timestamp."""
        try:
            result = await self.db.execute(
                select(TraceEvent)
                .where(TraceEvent.trace_id == trace_id)
                .order_by(TraceEvent.sequence_number, TraceEvent.timestamp)
            )
        except SQLAlchemyError as e:
            raise TracePersistenceError(f"Failed to get trace events: {e}") from e
        return list(result.scalars().all())

    async def get_traces(self, filters: TraceFilters | None = None) -> dict[str, Any]:
        """List traces matching the filters.

        Returns:
            Dict with traces, total_count and has_more
        """
        filters = filters or TraceFilters()
        query = apply_trace_filters(select(Trace), filters)
        count_query = apply_trace_filters(select(func.count()).select_from(Trace), filters)

        sort_column = getattr(Trace, filters.sort_by)
        query = (
            query.order_by(sort_column.asc() if filters.sort_order == "asc" else sort_column.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )

        try:
            traces = list((await self.db.execute(query)).scalars().all())
            total_count = (await self.db.execute(count_query)).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to get traces: {e}", exc_info=True)
            raise TracePersistenceError(f"Failed to get traces: {e}") from e

        return {
            "traces": traces,
            "total_count": total_count,
            "has_more": total_count > filters.offset + filters.limit,
        }

    async def get_trace_metrics(self, filters: TraceFilters | None = None) -> TraceMetrics:
        """Aggregate metrics over traces matching user, model, source and date filters."""
        filters = filters or TraceFilters()
        query = apply_trace_filters(
            select(
                Trace.status,
                Trace.duration_ms,
                Trace.first_token_latency_ms,
                Trace.cost_calculation,
                Trace.tokens_per_second,
                Trace.streaming_enabled,
            ),
            filters,
            fields={"user_id", "model", "source", "start_date", "end_date"},
        )
        try:
            rows = (await self.db.execute(query)).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to get trace metrics: {e}", exc_info=True)
            raise TracePersistenceError(f"Failed to get trace metrics: {e}") from e
        return summarize_traces(rows)

    async def get_live_traces(self) -> dict[str, Any]:
        """Active traces from the last five minutes plus rolling latency and error rate.

        Degrades to an empty snapshot when the database is unreachable so
        dashboards keep polling.
        """
        since = utc_now() - LIVE_WINDOW
        try:
            active = list(
                (
                    await self.db.execute(
                        select(Trace)
                        .where(Trace.status.in_(sorted(ACTIVE_STATUSES)))
                        .where(Trace.created_at >= since)
                        .order_by(Trace.created_at.desc())
                        .limit(LIVE_TRACE_LIMIT)
                    )
                ).scalars().all()
            )
            recent = (
                await self.db.execute(
                    select(Trace.duration_ms, Trace.status)
                    .where(Trace.created_at >= since)
                    .where(
                        Trace.status.in_([TraceStatus.SUCCESS.value, TraceStatus.ERROR.value])
                    )
                )
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to get live traces: {e}", exc_info=True)
            return {"active": 0, "avg_latency": 0.0, "error_rate": 0.0, "traces": []}

        durations = [row.duration_ms for row in recent if row.duration_ms]
        errors = sum(1 for row in recent if row.status == TraceStatus.ERROR.value)
        return {
            "active": len(active),
            "avg_latency": _mean(durations),
            "error_rate": errors / len(recent) * 100 if recent else 0.0,
            "traces": active,
        }

    async def search_traces(
        self, query: str, filters: TraceFilters | None = None
    ) -> list[Trace]:
        """Case-insensitive substring search over prompt and response text.

        Only user, model and status filters apply, and there is no offset:
        results are capped at ``filters.limit`` (default 50). ``%`` and ``_``
        in the query match literally.
        """
        filters = filters or TraceFilters(limit=DEFAULT_SEARCH_LIMIT)
        pattern = f"%{escape_like(query)}%"
        statement = apply_trace_filters(
            select(Trace).where(
                or_(
                    Trace.prompt_content.ilike(pattern, escape="\\"),
                    Trace.response_content.ilike(pattern, escape="\\"),
                )
            ),
            filters,
            fields=SEARCH_FILTER_FIELDS,
        )
        statement = statement.order_by(Trace.created_at.desc()).limit(filters.limit)
        try:
            return list((await self.db.execute(statement)).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to search traces: {e}", exc_info=True)
            raise TracePersistenceError(f"Failed to search traces: {e}") from e

    async def _load(self, trace_id: str) -> Trace:
        trace = await self.get_trace(trace_id)
        if trace is None:
            raise TraceNotFoundError(trace_id)
        return trace
