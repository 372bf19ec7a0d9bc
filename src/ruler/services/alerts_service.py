from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Request

from src.ruler.schemas.alerts import AlertEventOut, AlertEventsQuery, AlertOut
from src.ruler.services.alert_state import Alert
from src.ruler.state import get_state

logger = logging.getLogger(__name__)


class EventsUnavailableError(RuntimeError):
    """Alert event history needs MongoDB, which is not configured."""


def alert_to_out(alert: Alert) -> AlertOut:
    return AlertOut(
        group=alert.group,
        rule=alert.rule,
        fingerprint=alert.fingerprint,
        labels=dict(alert.labels),
        annotations=dict(alert.annotations),
        state=alert.state.value,
        activeAt=alert.active_since,
        firedAt=alert.fired_at,
        resolvedAt=alert.resolved_at,
        value=alert.value,
    )


def _doc_to_event_out(doc: dict) -> AlertEventOut:
    return AlertEventOut(
        id=str(doc.get("_id", "")),
        group=doc["group"],
        rule=doc["rule"],
        fingerprint=doc.get("fingerprint", ""),
        labels=doc.get("labels") or {},
        annotations=doc.get("annotations") or {},
        eventType=doc["eventType"],
        state=doc["state"],
        previousState=doc["previousState"],
        value=doc.get("value"),
        activeSince=doc.get("activeSince"),
        firedAt=doc.get("firedAt"),
        resolvedAt=doc.get("resolvedAt"),
        createdAt=doc["createdAt"],
    )


# PUBLIC_INTERFACE
def list_alerts(request: Request, state: Optional[str] = None) -> List[AlertOut]:
    """Current alert instances across all groups, optionally filtered by state."""
    store = get_state(request.app).engine.scheduler.store
    alerts = store.snapshot()
    if state:
        alerts = [a for a in alerts if a.state.value == state]
    alerts.sort(key=lambda a: (a.group, a.rule, a.fingerprint))
    return [alert_to_out(a) for a in alerts]


def _events_query_from_filters(q: AlertEventsQuery) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q.group:
        query["group"] = q.group
    if q.rule:
        query["rule"] = q.rule
    if q.state:
        query["state"] = q.state
    if q.event_type:
        query["eventType"] = q.event_type
    if q.fingerprint:
        query["fingerprint"] = q.fingerprint

    if q.start or q.end:
        created: Dict[str, Any] = {}
        if q.start:
            created["$gte"] = q.start
        if q.end:
            created["$lte"] = q.end
        query["createdAt"] = created

    return query


# PUBLIC_INTERFACE
def list_events(request: Request, filters: AlertEventsQuery) -> Tuple[List[AlertEventOut], int]:
    """
    List alert events with filters and pagination.

    Returns (items, total_matching). Raises EventsUnavailableError without MongoDB.
    """
    mongo = get_state(request.app).mongo
    if mongo is None:
        raise EventsUnavailableError("alert event history requires BACKEND_MONGO_URI")
    cols = mongo.collections()
    q = _events_query_from_filters(filters)

    total = int(cols.alert_events.count_documents(q))
    docs = list(
        cols.alert_events.find(q)
        .sort("createdAt", -1)
        .skip(int(filters.offset))
        .limit(int(filters.limit))
    )
    return ([_doc_to_event_out(d) for d in docs], total)
