"""Pytest configuration and fixtures."""

import os
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.ai.client import AIClient
from app.models import Base, Trace
from app.services.observability import MirroredInteraction
from app.services.tracing import TraceContextStore, context as trace_context
from tests.factories import make_trace

# In-memory SQLite by default; point at a Postgres test database to exercise JSONB
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


def pytest_addoption(parser):
    """Add custom CLI options."""
    parser.addoption(
        "--run-evals",
        action="store_true",
        default=False,
        help="Run eval tests (requires real OPENAI_API_KEY)",
    )


def pytest_collection_modifyitems(config, items):
    """Skip eval tests unless --run-evals is passed."""
    if config.getoption("--run-evals"):
        return
    skip_eval = pytest.mark.skip(reason="need --run-evals option to run")
    for item in items:
        if "eval" in item.keywords:
            item.add_marker(skip_eval)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store() -> TraceContextStore:
    """Fresh in-memory trace registry."""
    return TraceContextStore()


@pytest.fixture(autouse=True)
def isolated_trace_store(store, monkeypatch):
    """Make the process-wide registry the per-test one."""
    monkeypatch.setattr(trace_context, "_store", store)
    return store


@pytest.fixture
def ai_client() -> AIClient:
    """AI client with no provider keys; only the offline test model works."""
    return AIClient(openai_api_key="", openrouter_api_key="")


@pytest.fixture
def mock_ai_client() -> MagicMock:
    """AI client whose completions are scripted per test."""
    client = MagicMock(spec=AIClient)
    client.complete = AsyncMock(return_value='{"score": 0.8, "reasoning": "Looks good"}')
    return client


@pytest.fixture
def mock_mirror() -> MagicMock:
    """Langfuse mirror that records calls instead of sending them."""
    mirror = MagicMock()
    mirror.is_configured = True
    mirror.record_interaction = AsyncMock(
        return_value=MirroredInteraction(trace_id="langfuse-trace-1", observation_id="generation-1")
    )
    mirror.close = AsyncMock()
    return mirror


@pytest_asyncio.fixture
async def add_traces(db: AsyncSession):
    """Insert trace rows built by ``make_trace``."""

    async def _add(*specs: dict[str, Any]) -> list[Trace]:
        traces = [make_trace(**spec) for spec in specs]
        db.add_all(traces)
        await db.commit()
        return traces

    return _add
