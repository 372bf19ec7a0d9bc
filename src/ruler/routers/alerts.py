from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from src.ruler.schemas.alerts import (
    AlertEventListResponse,
    AlertEventsQuery,
    AlertEventType,
    AlertListResponse,
    AlertStateValue,
)
from src.ruler.schemas.common import ErrorResponse
from src.ruler.services import alerts_service

router = APIRouter(tags=["Alerts"])


@router.get(
    "/api/v1/alerts",
    response_model=AlertListResponse,
    summary="List active alerts",
    description="Current alert instances across all rule groups.",
    operation_id="list_alerts",
)
async def list_alerts(
    request: Request,
    state: Optional[AlertStateValue] = Query(default=None, description="Filter by state."),
) -> AlertListResponse:
    """List alert instances."""
    items = alerts_service.list_alerts(request, state=state)
    return AlertListResponse(items=items, total=len(items))


@router.get(
    "/api/alerts/events",
    response_model=AlertEventListResponse,
    responses={503: {"model": ErrorResponse}},
    summary="List alert events feed",
    description=(
        "List persisted alert transitions with filters: group, rule, state, eventType, fingerprint, time range. "
        "Results sorted by createdAt desc."
    ),
    operation_id="list_alert_events",
)
def list_events(
    request: Request,
    group: Optional[str] = Query(default=None),
    rule: Optional[str] = Query(default=None),
    state: Optional[AlertStateValue] = Query(default=None, description="inactive|pending|firing"),
    event_type: Optional[AlertEventType] = Query(default=None, alias="eventType", description="pending|firing|resolved|cleared"),
    fingerprint: Optional[str] = Query(default=None),
    start: Optional[str] = Query(default=None, description="ISO datetime start (inclusive)"),
    end: Optional[str] = Query(default=None, description="ISO datetime end (inclusive)"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> AlertEventListResponse:
    """List alert events with filters and pagination."""
    # Let Pydantic parse datetimes and validate enums via the model.
    filters = AlertEventsQuery(
        group=group,
        rule=rule,
        state=state,
        eventType=event_type,
        fingerprint=fingerprint,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    try:
        items, total = alerts_service.list_events(request, filters)
    except alerts_service.EventsUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return AlertEventListResponse(items=items, total=total)
