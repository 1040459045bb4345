"""FastAPI application entry point for the PromptLab tracing API."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.api.deps import get_streaming_orchestrator
from app.api.middleware import TraceContextMiddleware
from app.api.v1.router import router as api_v1_router
from app.config import get_settings
from app.database import engine
from app.services.metrics import render_metrics
from app.services.observability import get_langfuse_mirror
from app.services.tracing import SESSION_ID_HEADER, TRACE_ID_HEADER, get_trace_store

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan - startup and shutdown events."""
    # Startup
    logger.info(f"Starting PromptLab tracing API ({settings.app_env})")
    logger.info(f"Database: {settings.async_database_url.split('@')[-1]}")  # Hide credentials

    # Test database connection
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection successful")
    except Exception as e:
        logger.error(f"Database connection failed: {e}")

    store = get_trace_store()
    store.start_cleanup_task()

    yield

    # Shutdown
    logger.info("Shutting down PromptLab tracing API")
    await store.stop_cleanup_task()
    await get_streaming_orchestrator().wait_background()
    await get_langfuse_mirror().close()
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="PromptLab Tracing API",
    description="Tracing, streaming and analytics for AI interactions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
allowed_origins = [
    settings.frontend_url,
    "http://localhost:3000",  # Local development
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins if not settings.is_development else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[TRACE_ID_HEADER, SESSION_ID_HEADER],
)
app.add_middleware(TraceContextMiddleware)

# Include routers
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "name": "PromptLab Tracing API",
        "version": "0.1.0",
        "description": "Tracing, streaming and analytics for AI interactions",
    }


@app.get("/health")
async def health() -> dict[str, str]:
    """Global health check."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    payload, content_type = render_metrics(get_trace_store())
    return Response(content=payload, media_type=content_type)
