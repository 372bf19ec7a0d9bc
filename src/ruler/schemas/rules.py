from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.ruler.schemas.alerts import AlertOut

RuleType = Literal["alerting", "recording"]
RuleHealthValue = Literal["unknown", "ok", "err"]


class RuleOut(BaseModel):
    """One rule with its evaluation health."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Alert name or recorded metric name.")
    query: str = Field(..., description="Expression sent to the query backend.")
    type: RuleType = Field(..., description="Rule kind.")
    duration: float = Field(0.0, description="'for' duration in seconds (alerting rules).")
    labels: Dict[str, str] = Field(default_factory=dict, description="Static labels attached by the rule.")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Annotation templates (alerting rules).")
    health: RuleHealthValue = Field(..., description="Outcome of the last evaluation.")
    last_error: Optional[str] = Field(default=None, description="Error of the last failed evaluation.", alias="lastError")
    last_evaluation: Optional[datetime] = Field(
        default=None, description="Scheduled timestamp of the last evaluation.", alias="lastEvaluation"
    )
    evaluation_time: float = Field(0.0, description="Seconds spent in the last evaluation.", alias="evaluationTime")
    alerts: List[AlertOut] = Field(default_factory=list, description="Active alert instances (alerting rules).")


class RuleGroupOut(BaseModel):
    """A rule group and its rules."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Group name (unique across the rule set).")
    file: str = Field(..., description="Rule file the group was loaded from.")
    interval: float = Field(..., description="Evaluation interval in seconds.")
    last_evaluation: Optional[datetime] = Field(
        default=None, description="Scheduled timestamp of the last tick.", alias="lastEvaluation"
    )
    evaluation_time: float = Field(0.0, description="Seconds spent in the last tick.", alias="evaluationTime")
    evaluations: int = Field(0, ge=0, description="Completed ticks.")
    missed_evaluations: int = Field(0, ge=0, description="Ticks skipped due to overrun.", alias="missedEvaluations")
    next_evaluation: Optional[datetime] = Field(
        default=None, description="Next scheduled tick.", alias="nextEvaluation"
    )
    rules: List[RuleOut] = Field(default_factory=list, description="Rules in evaluation order.")


class RuleGroupListResponse(BaseModel):
    """Envelope for listing rule groups."""

    model_config = ConfigDict(populate_by_name=True)

    generation: int = Field(..., ge=0, description="Rule set generation; increments on every successful reload.")
    loaded_at: Optional[datetime] = Field(default=None, description="When the rule set was loaded.", alias="loadedAt")
    groups: List[RuleGroupOut] = Field(..., description="Rule groups.")
    total: int = Field(..., ge=0, description="Number of groups returned.")


class ReloadResponse(BaseModel):
    """Result of a successful hot reload."""

    generation: int = Field(..., ge=0, description="New rule set generation.")
    unchanged: int = Field(..., ge=0)
    changed: int = Field(..., ge=0)
    added: int = Field(..., ge=0)
    removed: int = Field(..., ge=0)
