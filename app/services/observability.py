"""Usage logging and the optional Langfuse mirror for completed generations.

Both are fire-and-forget: failures here are logged and never reach the
caller's response.
"""

import asyncio
import logging
from datetime import datetime

from langfuse import Langfuse
from pydantic import BaseModel

from app.config import get_settings
from app.services.tracing import traced_span
from app.utils.time import utc_now

logger = logging.getLogger(__name__)
usage_logger = logging.getLogger("app.usage")
settings = get_settings()


class InteractionRecord(BaseModel):
    """Facts about one finished generation."""

    trace_id: str
    user_id: str
    model: str
    provider: str
    prompt: str
    response: str
    status: str = "success"
    latency_ms: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    streaming_enabled: bool = True
    start_time: datetime | None = None
    end_time: datetime | None = None


def log_api_usage(record: InteractionRecord) -> None:
    """Emit one structured usage record on the ``app.usage`` logger."""
    usage_logger.info(
        f"api_usage provider={record.provider} model={record.model} "
        f"tokens={record.prompt_tokens}+{record.completion_tokens} "
        f"cost={record.cost:.6f} duration={record.latency_ms}ms status={record.status}",
        extra={
            "trace_id": record.trace_id,
            "user_id": record.user_id,
            "provider": record.provider,
            "model": record.model,
            "input_tokens": record.prompt_tokens,
            "output_tokens": record.completion_tokens,
            "total_cost": record.cost,
            "request_duration_ms": record.latency_ms,
            "status": record.status,
            "streaming_enabled": record.streaming_enabled,
        },
    )


class MirroredInteraction(BaseModel):
    """Langfuse ids for a mirrored interaction."""

    trace_id: str
    observation_id: str | None = None


class LangfuseMirror:
    """Records finished generations in Langfuse through the Langfuse SDK."""

    def __init__(
        self,
        host: str | None = None,
        public_key: str | None = None,
        secret_key: str | None = None,
        enabled: bool | None = None,
        client: Langfuse | None = None,
    ):
        self.host = (host or settings.langfuse_host).rstrip("/")
        self.public_key = public_key if public_key is not None else settings.langfuse_public_key
        self.secret_key = secret_key if secret_key is not None else settings.langfuse_secret_key
        self.enabled = settings.langfuse_enabled if enabled is None else enabled
        self._client = client

    @property
    def is_configured(self) -> bool:
        """Check if the mirror is switched on and has credentials."""
        return bool(self.enabled and self.public_key and self.secret_key)

    @property
    def client(self) -> Langfuse:
        """SDK client, created on first use."""
        if self._client is None:
            self._client = Langfuse(
                public_key=self.public_key,
                secret_key=self.secret_key,
                host=self.host,
            )
        return self._client

    @traced_span(operation_name="langfuse.ingest", capture_args=["record"])
    async def record_interaction(self, record: InteractionRecord) -> MirroredInteraction | None:
        """Mirror an interaction as a trace with one generation.

        The SDK queues events and sends them from its own worker thread.

        Returns:
            Langfuse ids, or None if the mirror is off or the SDK call failed
        """
        if not self.is_configured:
            return None

        try:
            trace = self.client.trace(
                id=record.trace_id,
                name="playground-execution",
                user_id=record.user_id or None,
                input=record.prompt,
                output=record.response,
                metadata={
                    "provider": record.provider,
                    "streaming": record.streaming_enabled,
                },
            )
            generation = trace.generation(
                name=f"{record.provider}-generation",
                model=record.model,
                start_time=record.start_time or utc_now(),
                end_time=record.end_time or utc_now(),
                input=record.prompt,
                output=record.response,
                usage={
                    "input": record.prompt_tokens,
                    "output": record.completion_tokens,
                    "total": record.total_tokens,
                    "unit": "TOKENS",
                    "total_cost": record.cost,
                },
                level="DEFAULT" if record.status == "success" else "ERROR",
            )
        except Exception as e:
            logger.error(f"Failed to mirror trace {record.trace_id} to Langfuse: {e}")
            return None

        return MirroredInteraction(trace_id=trace.id, observation_id=generation.id)

    async def close(self) -> None:
        """Flush queued events and stop the SDK worker."""
        if self._client is None:
            return
        await asyncio.to_thread(self._client.shutdown)
        self._client = None


_mirror: LangfuseMirror | None = None


def get_langfuse_mirror() -> LangfuseMirror:
    """Get singleton Langfuse mirror instance."""
    global _mirror
    if _mirror is None:
        _mirror = LangfuseMirror()
    return _mirror
