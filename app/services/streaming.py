"""Streaming orchestrator - drives one generation from request to finalized trace.

State machine of the trace behind a stream:

    pending -> streaming -> success | error | cancelled
    pending -> error (validation failed before the channel opened)

The orchestrator is the boundary where every failure becomes a typed
``error`` message; nothing raised below it crosses the stream. Each durable
step uses its own short-lived session, so a client disconnect never strands
a half-used session.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.ai.client import AIClient, GenerationRequest, GenerationResult, TokenUsage
from app.ai.output_parser import check_type_and_required, load_schema, parse_output
from app.config import get_settings
from app.models import TraceEventType, TraceStatus
from app.schemas.playground import StreamMessage, StreamRequest
from app.schemas.tracing import (
    CostCalculation,
    PerformanceMetrics,
    TokensUsed,
    TraceErrorInfo,
    TraceResult,
)
from app.services.metrics import record_ai_request, time_trace_operation
from app.services.observability import InteractionRecord, LangfuseMirror, log_api_usage
from app.services.tracing import TraceContextStore, TraceService, set_current_trace
from app.services.tracing.sanitize import format_exception
from app.utils.time import from_epoch_ms, utc_now

logger = logging.getLogger(__name__)
settings = get_settings()

# Error codes recorded on traces
VALIDATION_ERROR = "VALIDATION_ERROR"
GENERATION_ERROR = "GENERATION_ERROR"
GENERATION_EXCEPTION = "GENERATION_EXCEPTION"
REQUEST_ERROR = "REQUEST_ERROR"

GENERIC_ERROR_MESSAGE = "Generation failed. Please try again."

# Persist a progress event every N tokens instead of one per token
TOKEN_BATCH_SIZE = 10

# Rough chars-per-token when the provider reports no usage
CHARS_PER_TOKEN = 4


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenSource(ABC):
    """Yields the text pieces of a generation."""

    @abstractmethod
    def tokens(self) -> AsyncIterator[str]:
        """Iterate over emitted tokens."""

    @property
    @abstractmethod
    def usage(self) -> TokenUsage | None:
        """Provider-reported usage, once known."""


class ProviderTokenStream(TokenSource):
    """Relays a provider's native token stream."""

    def __init__(self, result: GenerationResult):
        self._result = result

    async def tokens(self) -> AsyncIterator[str]:
        async for token in self._result.stream:
            yield token

    @property
    def usage(self) -> TokenUsage | None:
        return self._result.usage


class SimulatedTokenStream(TokenSource):
    """Replays a complete response word by word with a fixed pause.

    Gives callers the same streaming experience for providers that only
    return whole strings.
    """

    def __init__(self, result: GenerationResult, delay_seconds: float):
        self._result = result
        self.delay_seconds = delay_seconds

    async def tokens(self) -> AsyncIterator[str]:
        for word in (self._result.content or "").split(" "):
            yield word + " "
            if self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

    @property
    def usage(self) -> TokenUsage | None:
        return self._result.usage


def select_token_source(result: GenerationResult, delay_seconds: float) -> TokenSource:
    """Pick the real stream when the provider gave one, the simulation otherwise."""
    if result.stream is not None:
        return ProviderTokenStream(result)
    return SimulatedTokenStream(result, delay_seconds)


def estimate_usage(prompt: str, completion_tokens: int) -> TokenUsage:
    """Usage estimate for providers that report none."""
    prompt_tokens = math.ceil(len(prompt) / CHARS_PER_TOKEN)
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


class StreamSession:
    """A stream whose trace has been resolved but whose generation has not started."""

    def __init__(
        self,
        request: StreamRequest,
        user_id: str,
        trace_id: str,
        session_id: str,
        start_ms: int,
        reused: bool,
    ):
        self.request = request
        self.user_id = user_id
        self.trace_id = trace_id
        self.session_id = session_id
        self.start_ms = start_ms
        self.reused = reused

        # Progress, read by the cancellation path
        self.content = ""
        self.token_count = 0
        self.generation_started = False
        self.finalized = False

    @property
    def headers(self) -> dict[str, str]:
        return {"x-trace-id": self.trace_id, "x-session-id": self.session_id}


class StreamingOrchestrator:
    """Runs streamed generations against the trace store and database.

    Args:
        session_factory: Creates database sessions for each durable step
        ai_client: Generation collaborator
        store: In-memory trace registry
        mirror: Optional Langfuse mirror
        token_delay_seconds: Pause between simulated tokens
        token_batch_size: Tokens between persisted progress events
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ai_client: AIClient,
        store: TraceContextStore,
        mirror: LangfuseMirror | None = None,
        token_delay_seconds: float | None = None,
        token_batch_size: int = TOKEN_BATCH_SIZE,
    ):
        self.session_factory = session_factory
        self.ai_client = ai_client
        self.store = store
        self.mirror = mirror
        self.token_delay_seconds = (
            settings.simulated_token_delay_seconds
            if token_delay_seconds is None
            else token_delay_seconds
        )
        self.token_batch_size = token_batch_size
        self._background: set[asyncio.Task] = set()

    async def _with_service(self, action: Callable[[TraceService], Awaitable[Any]]) -> Any:
        async with self.session_factory() as db:
            return await action(TraceService(db, self.store))

    async def open(
        self,
        request: StreamRequest,
        user_id: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
        parent_trace_id: str | None = None,
    ) -> StreamSession:
        """Resolve or create the trace for a stream request.

        An active trace named by ``request.trace_id`` is reused; anything
        else gets a fresh pending trace.

        Raises:
            TracePersistenceError: If a new trace could not be stored
        """
        active = self.store.get_active_trace(request.trace_id) if request.trace_id else None
        if active is not None:
            logger.info(f"Reusing active trace {active.trace_id} for stream")
            return StreamSession(
                request, user_id, active.trace_id, active.session_id, active.start_time, True
            )

        context = await self._with_service(
            lambda service: service.start_trace(
                user_id=user_id,
                model=request.model,
                prompt_content=request.prompt,
                system_prompt=request.system_prompt,
                parameters=request.parameters.model_dump(),
                source="playground",
                prompt_id=request.prompt_id,
                session_id=request.session_id,
                parent_trace_id=parent_trace_id,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )
        return StreamSession(
            request, user_id, context.trace_id, context.session_id, context.start_time, False
        )

    def _message(self, stream: StreamSession, kind: str, data: dict[str, Any]) -> dict[str, Any]:
        message = StreamMessage(type=kind, trace_id=stream.trace_id, data=data)
        return message.model_dump(by_alias=True)

    async def events(self, stream: StreamSession) -> AsyncIterator[dict[str, Any]]:
        """Run the generation, yielding stream messages.

        Never raises except for cancellation, which is recorded on the trace
        before it propagates.
        """
        request = stream.request
        # Spans opened below (provider call) attach to this trace
        set_current_trace(stream.trace_id, stream.session_id)
        generation = GenerationRequest(
            model=request.model,
            prompt=request.prompt,
            system_prompt=request.system_prompt,
            temperature=request.parameters.temperature,
            max_tokens=request.parameters.max_tokens,
            top_p=request.parameters.top_p,
            frequency_penalty=request.parameters.frequency_penalty,
            presence_penalty=request.parameters.presence_penalty,
        )

        try:
            validation = self.ai_client.validate_params(generation)
            if not validation.valid:
                await self._finalize_error(stream, VALIDATION_ERROR, validation.error)
                yield self._message(
                    stream, "error", {"error": validation.error, "code": VALIDATION_ERROR}
                )
                return

            await self._with_service(
                lambda service: service.update_trace(
                    stream.trace_id,
                    {"status": TraceStatus.STREAMING.value, "streaming_enabled": True},
                )
            )
            yield self._message(
                stream,
                "connected",
                {"traceId": stream.trace_id, "sessionId": stream.session_id, "model": request.model},
            )

            stream.generation_started = True
            result = await self.ai_client.generate_response(generation, stream=True)
            if result.error:
                await self._finalize_error(stream, GENERATION_ERROR, result.error)
                yield self._message(stream, "error", {"error": result.error, "code": GENERATION_ERROR})
                return

            source = select_token_source(result, self.token_delay_seconds)
            async for token in source.tokens():
                stream.content += token
                stream.token_count += 1

                if stream.token_count == 1:
                    await self._record_first_token(stream)
                elif stream.token_count % self.token_batch_size == 0:
                    await self._with_service(
                        lambda service: service.add_trace_event(
                            stream.trace_id,
                            TraceEventType.TOKEN,
                            {
                                "action": "token_batch",
                                "token_count": stream.token_count,
                                "content_length": len(stream.content),
                            },
                        )
                    )

                yield self._message(
                    stream,
                    "token",
                    {
                        "token": token,
                        "partial": stream.content.strip(),
                        "tokenCount": stream.token_count,
                    },
                )

            content = stream.content.strip()

            structured = request.structured_output
            if structured is not None and structured.enabled and content:
                yield await self._parse_structured(
                    stream, content, structured.format, structured.json_schema
                )

            usage = source.usage or estimate_usage(request.prompt, stream.token_count)
            provider = self.ai_client.get_provider_for_model(request.model)
            cost = await self._with_service(
                lambda service: service.calculate_and_store_trace_cost(
                    stream.trace_id,
                    provider,
                    request.model,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                )
            )
            duration_ms = _now_ms() - stream.start_ms

            with time_trace_operation("complete"):
                await self._with_service(
                    lambda service: service.complete_trace(
                        stream.trace_id,
                        TraceResult(
                            status="success",
                            response=content,
                            tokens_used=TokensUsed(
                                input=usage.prompt_tokens,
                                output=usage.completion_tokens,
                                total=usage.total_tokens,
                            ),
                            cost_calculation=CostCalculation(**cost.model_dump()),
                            streaming_enabled=True,
                        ),
                    )
                )
            stream.finalized = True
            record_ai_request(
                request.model,
                provider,
                duration_ms / 1000,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                cost=cost.total_cost,
            )

            yield self._message(
                stream,
                "complete",
                {
                    "content": content,
                    "usage": {
                        "promptTokens": usage.prompt_tokens,
                        "completionTokens": usage.completion_tokens,
                        "totalTokens": usage.total_tokens,
                    },
                    "cost": {
                        "inputCost": cost.input_cost,
                        "outputCost": cost.output_cost,
                        "totalCost": cost.total_cost,
                    },
                    "duration": duration_ms,
                    "model": request.model,
                    "provider": provider,
                },
            )

            await self._report_usage(
                InteractionRecord(
                    trace_id=stream.trace_id,
                    user_id=stream.user_id,
                    model=request.model,
                    provider=provider,
                    prompt=request.prompt,
                    response=content,
                    latency_ms=duration_ms,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    total_tokens=usage.total_tokens,
                    cost=cost.total_cost,
                    start_time=from_epoch_ms(stream.start_ms),
                    end_time=utc_now(),
                )
            )

        except (asyncio.CancelledError, GeneratorExit):
            if not stream.finalized:
                stream.finalized = True
                self._spawn(self._finalize_cancelled(stream))
            raise

        except Exception as e:
            logger.error(f"Stream for trace {stream.trace_id} failed: {e}", exc_info=True)
            if not stream.finalized:
                code = GENERATION_EXCEPTION if stream.generation_started else REQUEST_ERROR
                await self._finalize_exception(stream, code, e)
                yield self._message(stream, "error", {"error": GENERIC_ERROR_MESSAGE, "code": code})
            else:
                logger.warning(f"Post-completion step failed for trace {stream.trace_id}")

    async def _record_first_token(self, stream: StreamSession) -> None:
        latency_ms = _now_ms() - stream.start_ms

        async def persist(service: TraceService) -> None:
            await service.update_trace(stream.trace_id, {"first_token_latency_ms": latency_ms})
            await service.add_trace_event(
                stream.trace_id,
                TraceEventType.TOKEN,
                {"action": "first_token", "latency_ms": latency_ms},
            )

        await self._with_service(persist)

    async def _parse_structured(
        self,
        stream: StreamSession,
        content: str,
        output_format: str | None,
        schema: str | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Parse the final content. Failure is reported, never fatal to the trace."""
        try:
            parsed = parse_output(content)
        except Exception as e:
            logger.warning(f"Structured parse crashed for trace {stream.trace_id}: {e}")
            parsed = None

        if parsed is not None and parsed.is_structured and parsed.type == "json":
            schema_errors = check_type_and_required(parsed.data, load_schema(schema))
            if schema_errors:
                parsed = parsed.model_copy(update={"is_structured": False, "errors": schema_errors})

        if parsed is not None and parsed.is_structured:
            await self._with_service(
                lambda service: service.add_trace_event(
                    stream.trace_id,
                    TraceEventType.STRUCTURED,
                    {"success": True, "type": parsed.type, "format": output_format},
                )
            )
            return self._message(
                stream,
                "structured",
                {"parsed": parsed.model_dump(), "format": output_format, "raw": content},
            )

        await self._with_service(
            lambda service: service.add_trace_event(
                stream.trace_id,
                TraceEventType.STRUCTURED,
                {
                    "success": False,
                    "format": output_format,
                    "errors": parsed.errors if parsed is not None else None,
                },
            )
        )
        return self._message(
            stream,
            "parse_error",
            {"error": "Failed to parse structured output", "raw": content},
        )

    async def _finalize_error(self, stream: StreamSession, code: str, message: str) -> None:
        async def persist(service: TraceService) -> None:
            await service.add_trace_event(
                stream.trace_id, TraceEventType.ERROR, {"code": code, "message": message}
            )
            await service.complete_trace(
                stream.trace_id,
                TraceResult(
                    status="error",
                    response=stream.content.strip() or None,
                    error=TraceErrorInfo(message=message, code=code),
                ),
            )

        with time_trace_operation("error"):
            await self._with_service(persist)
        stream.finalized = True
        self._record_failed_request(stream, "error", code)

    async def _finalize_exception(self, stream: StreamSession, code: str, error: Exception) -> None:
        details = format_exception(error)

        async def persist(service: TraceService) -> None:
            await service.add_trace_event(
                stream.trace_id, TraceEventType.ERROR, {"code": code, **details}
            )
            await service.complete_trace(
                stream.trace_id,
                TraceResult(
                    status="error",
                    response=stream.content.strip() or None,
                    error=TraceErrorInfo(
                        message=details["message"], code=code, stack=details["stack"]
                    ),
                ),
            )

        stream.finalized = True
        self._record_failed_request(stream, "error", code)
        try:
            with time_trace_operation("exception"):
                await self._with_service(persist)
        except Exception as e:
            logger.error(f"Failed to record error on trace {stream.trace_id}: {e}", exc_info=True)

    async def _finalize_cancelled(self, stream: StreamSession) -> None:
        """Record a client disconnect. Tolerates a trace that was already finalized."""

        async def persist(service: TraceService) -> None:
            await service.add_trace_event(
                stream.trace_id,
                TraceEventType.USER_ACTION,
                {
                    "action": "cancelled",
                    "token_count": stream.token_count,
                    "content_length": len(stream.content),
                },
            )
            await service.complete_trace(
                stream.trace_id,
                TraceResult(
                    status="cancelled",
                    response=stream.content.strip() or None,
                    streaming_enabled=True,
                ),
            )

        self._record_failed_request(stream, "cancelled")
        try:
            with time_trace_operation("cancel"):
                await self._with_service(persist)
            logger.info(
                f"Stream for trace {stream.trace_id} cancelled after {stream.token_count} tokens"
            )
        except Exception as e:
            logger.error(
                f"Failed to record cancellation of trace {stream.trace_id}: {e}", exc_info=True
            )

    def _record_failed_request(
        self, stream: StreamSession, status: str, error_type: str | None = None
    ) -> None:
        model = stream.request.model
        record_ai_request(
            model,
            self.ai_client.get_provider_for_model(model),
            (_now_ms() - stream.start_ms) / 1000,
            status=status,
            error_type=error_type,
        )

    async def _report_usage(self, record: InteractionRecord) -> None:
        """Forward usage to the usage log and the mirror. Never raises."""
        try:
            log_api_usage(record)
        except Exception as e:
            logger.error(f"Failed to log usage for trace {record.trace_id}: {e}")

        if self.mirror is None or not self.mirror.is_configured:
            return
        try:
            mirrored = await self.mirror.record_interaction(record)
            if mirrored:
                await self._with_service(
                    lambda service: service.update_trace(
                        record.trace_id,
                        {
                            "langfuse_trace_id": mirrored.trace_id,
                            "langfuse_observation_id": mirrored.observation_id,
                        },
                    )
                )
        except Exception as e:
            logger.error(f"Failed to mirror trace {record.trace_id}: {e}", exc_info=True)

    def _spawn(self, coro: Awaitable[None]) -> None:
        # Runs outside the cancelled request task
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for detached cancellation bookkeeping to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
