from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.ruler.schemas.common import HealthResponse, utc_now
from src.ruler.state import get_state

router = APIRouter(tags=["Health"])


class QueryBackendHealthResponse(BaseModel):
    """Response model for engine-to-query-backend connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the query backend reports itself ready.")
    url: str = Field(..., description="Configured query backend base URL.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment probes.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/query-backend",
    response_model=QueryBackendHealthResponse,
    summary="Query backend connectivity check",
    description="Calls the query backend's readiness endpoint.",
    operation_id="query_backend_check",
)
async def query_backend_check(request: Request) -> QueryBackendHealthResponse:
    """Connectivity check endpoint for the Prometheus-compatible query backend."""
    state = get_state(request.app)
    ping = getattr(state.engine.query, "ping", None)
    ok = bool(await ping()) if ping is not None else True
    return QueryBackendHealthResponse(ok=ok, url=state.config.query_backend_url, timestamp=utc_now().isoformat())
