from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AlertStateValue = Literal["inactive", "pending", "firing"]
AlertEventType = Literal["pending", "firing", "resolved", "cleared"]


class AlertOut(BaseModel):
    """Current state of one alert instance."""

    model_config = ConfigDict(populate_by_name=True)

    group: str = Field(..., description="Rule group name.")
    rule: str = Field(..., description="Alerting rule name.")
    fingerprint: str = Field(..., description="Stable hash of the alert's label set.")
    labels: Dict[str, str] = Field(..., description="Full label set, including alertname.")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Rendered annotations.")
    state: AlertStateValue = Field(..., description="Alert state.")
    active_at: datetime = Field(..., description="When the label set first appeared.", alias="activeAt")
    fired_at: Optional[datetime] = Field(default=None, description="When the alert started firing.", alias="firedAt")
    resolved_at: Optional[datetime] = Field(default=None, description="When the alert resolved.", alias="resolvedAt")
    value: float = Field(..., description="Sample value of the last evaluation.")


class AlertListResponse(BaseModel):
    """Envelope for listing alert instances."""

    items: List[AlertOut] = Field(..., description="Alert instances.")
    total: int = Field(..., ge=0, description="Total count returned.")


class AlertEventOut(BaseModel):
    """One persisted alert state transition."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Event id (Mongo ObjectId string).")
    group: str = Field(..., description="Rule group name.")
    rule: str = Field(..., description="Alerting rule name.")
    fingerprint: str = Field(..., description="Stable hash of the alert's label set.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Full label set.")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Rendered annotations.")
    event_type: AlertEventType = Field(..., description="Kind of transition.", alias="eventType")
    state: AlertStateValue = Field(..., description="State after the transition.")
    previous_state: AlertStateValue = Field(..., description="State before the transition.", alias="previousState")
    value: Optional[float] = Field(default=None, description="Sample value at the transition.")
    active_since: Optional[datetime] = Field(default=None, alias="activeSince")
    fired_at: Optional[datetime] = Field(default=None, alias="firedAt")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    created_at: datetime = Field(..., description="Tick timestamp of the transition.", alias="createdAt")


class AlertEventListResponse(BaseModel):
    """Envelope for listing alert events."""

    items: List[AlertEventOut] = Field(..., description="List of alert events.")
    total: int = Field(..., ge=0, description="Total count of matching events.")


class AlertEventsQuery(BaseModel):
    """Filter/pagination model for listing alert events (used by router query params)."""

    model_config = ConfigDict(populate_by_name=True)

    group: Optional[str] = Field(default=None, description="Filter by rule group.")
    rule: Optional[str] = Field(default=None, description="Filter by alerting rule name.")
    state: Optional[AlertStateValue] = Field(default=None, description="Filter by state after the transition.")
    event_type: Optional[AlertEventType] = Field(default=None, description="Filter by event type.", alias="eventType")
    fingerprint: Optional[str] = Field(default=None, description="Filter by alert fingerprint.")
    start: Optional[datetime] = Field(default=None, description="Start time (inclusive) filter.")
    end: Optional[datetime] = Field(default=None, description="End time (inclusive) filter.")
    limit: int = Field(100, ge=1, le=500, description="Max number of events to return.")
    offset: int = Field(0, ge=0, le=100000, description="Offset for pagination (simple skip).")
