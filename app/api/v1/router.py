"""Main API router for v1 endpoints."""

from fastapi import APIRouter

from app.api.v1 import analytics, evaluations, playground, tracing

router = APIRouter()

# Include all sub-routers
router.include_router(tracing.router)
router.include_router(playground.router)
router.include_router(analytics.router)
router.include_router(evaluations.router)


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "message": "Tracing API is running"}
