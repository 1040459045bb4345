"""Tests for usage logging and the Langfuse mirror."""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from app.services.observability import InteractionRecord, LangfuseMirror, log_api_usage


pytestmark = pytest.mark.asyncio

START = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
END = datetime(2026, 10, 19, 9, 0, 2, tzinfo=timezone.utc)


def make_record(**overrides) -> InteractionRecord:
    values = {
        "trace_id": "3f1a9c2e-7b40-4000-8000-000000000001",
        "user_id": "user-1",
        "model": "gpt-4o-mini",
        "provider": "openai",
        "prompt": "Say hello",
        "response": "Hello!",
        "latency_ms": 2000,
        "prompt_tokens": 3,
        "completion_tokens": 2,
        "total_tokens": 5,
        "cost": 0.0012,
        "start_time": START,
        "end_time": END,
    }
    values.update(overrides)
    return InteractionRecord(**values)


@pytest.fixture
def sdk_client() -> MagicMock:
    """Langfuse SDK client whose trace and generation handles carry fixed ids."""
    client = MagicMock()
    trace = client.trace.return_value
    trace.id = "3f1a9c2e-7b40-4000-8000-000000000001"
    trace.generation.return_value.id = "generation-1"
    return client


def make_mirror(client, enabled: bool = True, public_key: str = "pk-lf-1") -> LangfuseMirror:
    return LangfuseMirror(
        host="https://langfuse.example.com/",
        public_key=public_key,
        secret_key="sk-lf-1",
        enabled=enabled,
        client=client,
    )


class TestLangfuseMirror:
    """Tests for mirroring interactions through the Langfuse SDK."""

    async def test_records_trace_and_generation(self, sdk_client):
        """One trace with one generation carrying usage and cost."""
        mirror = make_mirror(sdk_client)

        mirrored = await mirror.record_interaction(make_record())

        assert mirrored.trace_id == "3f1a9c2e-7b40-4000-8000-000000000001"
        assert mirrored.observation_id == "generation-1"

        sdk_client.trace.assert_called_once()
        trace_kwargs = sdk_client.trace.call_args.kwargs
        assert trace_kwargs["id"] == "3f1a9c2e-7b40-4000-8000-000000000001"
        assert trace_kwargs["user_id"] == "user-1"
        assert trace_kwargs["input"] == "Say hello"
        assert trace_kwargs["metadata"] == {"provider": "openai", "streaming": True}

        generation_kwargs = sdk_client.trace.return_value.generation.call_args.kwargs
        assert generation_kwargs["name"] == "openai-generation"
        assert generation_kwargs["model"] == "gpt-4o-mini"
        assert generation_kwargs["start_time"] == START
        assert generation_kwargs["end_time"] == END
        assert generation_kwargs["level"] == "DEFAULT"
        assert generation_kwargs["usage"] == {
            "input": 3,
            "output": 2,
            "total": 5,
            "unit": "TOKENS",
            "total_cost": 0.0012,
        }

    async def test_failed_interaction_logged_at_error_level(self, sdk_client):
        """Non-success interactions are mirrored with level ERROR."""
        mirror = make_mirror(sdk_client)

        await mirror.record_interaction(make_record(status="error"))

        generation_kwargs = sdk_client.trace.return_value.generation.call_args.kwargs
        assert generation_kwargs["level"] == "ERROR"

    async def test_skips_when_disabled_or_missing_keys(self, sdk_client):
        """Nothing is sent unless the mirror is enabled and has both keys."""
        disabled = make_mirror(sdk_client, enabled=False)
        keyless = make_mirror(sdk_client, public_key="")

        assert disabled.is_configured is False
        assert keyless.is_configured is False
        assert await disabled.record_interaction(make_record()) is None
        assert await keyless.record_interaction(make_record()) is None
        sdk_client.trace.assert_not_called()

    async def test_sdk_failure_returns_none(self, sdk_client, caplog):
        """SDK errors are logged and swallowed."""
        sdk_client.trace.side_effect = RuntimeError("queue full")
        mirror = make_mirror(sdk_client)

        with caplog.at_level(logging.ERROR, logger="app.services.observability"):
            result = await mirror.record_interaction(make_record())

        assert result is None
        assert "queue full" in caplog.text

    async def test_close_shuts_down_sdk(self, sdk_client):
        """Closing flushes the SDK once; a second close is a no-op."""
        mirror = make_mirror(sdk_client)

        await mirror.close()
        await mirror.close()

        sdk_client.shutdown.assert_called_once()

    async def test_sdk_client_built_from_settings(self, monkeypatch):
        """The SDK client is created lazily with the mirror's credentials."""
        created = MagicMock()
        factory = MagicMock(return_value=created)
        monkeypatch.setattr("app.services.observability.Langfuse", factory)
        mirror = make_mirror(None)

        assert mirror.client is created
        assert mirror.client is created
        factory.assert_called_once_with(
            public_key="pk-lf-1",
            secret_key="sk-lf-1",
            host="https://langfuse.example.com",
        )


class TestUsageLog:
    """Tests for the structured usage record."""

    async def test_emits_usage_fields(self, caplog):
        """The usage logger carries token, cost and status fields."""
        with caplog.at_level(logging.INFO, logger="app.usage"):
            log_api_usage(make_record())

        record = caplog.records[-1]
        assert record.name == "app.usage"
        assert record.input_tokens == 3
        assert record.output_tokens == 2
        assert record.total_cost == 0.0012
        assert record.status == "success"
        assert "model=gpt-4o-mini" in record.getMessage()
