"""Dependency injection for API endpoints."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.ai.client import get_ai_client
from app.database import async_session_maker, get_db
from app.services.analytics import AggregationService, AnalyticsService, CostOptimizer, TraceAnalytics
from app.services.evaluators import EvaluatorRegistry, get_evaluator_registry
from app.services.observability import get_langfuse_mirror
from app.services.streaming import StreamingOrchestrator
from app.services.tracing import TraceService, get_trace_store
from app.utils.jwt import TokenPayload, decode_access_token, is_admin_token

__all__ = [
    "get_db",
    "AsyncSession",
    "CurrentUser",
    "get_current_user",
    "require_admin",
    "resolve_user_scope",
    "get_trace_service",
    "get_trace_analytics",
    "get_analytics_service",
    "get_cost_optimizer",
    "get_aggregation_service",
    "get_streaming_orchestrator",
    "get_evaluators",
]

# Bearer token security scheme
bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser:
    """Caller identity resolved from the bearer token."""

    def __init__(self, user_id: str, is_admin: bool = False):
        self.user_id = user_id
        self.is_admin = is_admin


def _decode(credentials: HTTPAuthorizationCredentials | None) -> TokenPayload:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


# Auth dependency - get current user from JWT
async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> CurrentUser:
    """Get the caller from the JWT token.

    Raises 401 if not authenticated or token is invalid.
    """
    payload = _decode(credentials)
    return CurrentUser(user_id=payload.sub, is_admin=is_admin_token(payload))


async def require_admin(
    user: Annotated[CurrentUser, Depends(get_current_user)],
) -> CurrentUser:
    """Verify admin JWT token. Raises 403 if not admin."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def resolve_user_scope(user: CurrentUser, requested_user_id: str | None) -> str | None:
    """User id a query is restricted to.

    Admins may query any user (or all users with None); everyone else only
    sees their own data.
    """
    if user.is_admin:
        return requested_user_id
    if requested_user_id and requested_user_id != user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized for this user",
        )
    return user.user_id


# Service dependencies
async def get_trace_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TraceService:
    return TraceService(db, get_trace_store())


async def get_trace_analytics(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TraceAnalytics:
    return TraceAnalytics(db, TraceService(db, get_trace_store()))


async def get_analytics_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> AnalyticsService:
    return AnalyticsService(db)


async def get_cost_optimizer(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CostOptimizer:
    return CostOptimizer(db)


async def get_aggregation_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> AggregationService:
    return AggregationService(db)


_orchestrator: StreamingOrchestrator | None = None


def get_streaming_orchestrator() -> StreamingOrchestrator:
    """Get singleton streaming orchestrator.

    It opens its own short-lived sessions, so it does not take the
    request-scoped one.
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = StreamingOrchestrator(
            session_factory=async_session_maker,
            ai_client=get_ai_client(),
            store=get_trace_store(),
            mirror=get_langfuse_mirror(),
        )
    return _orchestrator


def get_evaluators() -> EvaluatorRegistry:
    return get_evaluator_registry()
