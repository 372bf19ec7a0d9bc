from __future__ import annotations

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.ruler.state import get_state

router = APIRouter(tags=["Metrics"])


@router.get(
    "/metrics",
    summary="Engine metrics",
    description="Rule evaluation self-metrics in Prometheus text exposition format.",
    operation_id="get_engine_metrics",
    response_class=Response,
)
async def get_engine_metrics(request: Request) -> Response:
    """Expose the engine's CollectorRegistry."""
    registry = get_state(request.app).engine.scheduler.metrics.registry
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
