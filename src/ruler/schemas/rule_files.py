from __future__ import annotations

import re
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

DurationValue = Union[str, int]


def _check_label_names(mapping: Dict[str, str], what: str) -> Dict[str, str]:
    for name in mapping:
        if not _LABEL_NAME_RE.match(name) or name.startswith("__"):
            raise ValueError(f"invalid {what} name {name!r}")
    return mapping


class RuleSpec(BaseModel):
    """One entry of a group's `rules:` list (alerting or recording)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    alert: Optional[str] = Field(default=None, description="Alert name (alerting rule).")
    record: Optional[str] = Field(default=None, description="Metric name to record (recording rule).")
    expr: str = Field(..., description="Query expression evaluated by the backend.")
    for_: Optional[DurationValue] = Field(default=None, alias="for", description="Pending duration before firing.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Static labels added to results.")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Annotation templates (alerting only).")

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def _stringify_values(cls, v):
        # YAML turns `severity: 1` or `critical: true` into non-strings.
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("must be a mapping")
        return {str(k): "" if val is None else str(val) for k, val in v.items()}

    @field_validator("expr")
    @classmethod
    def _expr_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("expr must not be empty")
        return v

    @model_validator(mode="after")
    def _check_kind(self) -> "RuleSpec":
        if bool(self.alert) == bool(self.record):
            raise ValueError("exactly one of 'alert' or 'record' must be set")
        if self.record is not None:
            if not _METRIC_NAME_RE.match(self.record):
                raise ValueError(f"invalid recording rule name {self.record!r}")
            if self.for_ is not None:
                raise ValueError(f"recording rule {self.record!r}: 'for' is only valid for alerting rules")
            if self.annotations:
                raise ValueError(f"recording rule {self.record!r}: 'annotations' is only valid for alerting rules")
        _check_label_names(self.labels, "label")
        _check_label_names(self.annotations, "annotation")
        return self


class RuleGroupSpec(BaseModel):
    """One entry of a rule file's `groups:` list."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Group name, unique across the whole rule set.")
    interval: Optional[DurationValue] = Field(default=None, description="Evaluation interval override.")
    rules: List[RuleSpec] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def _null_rules(cls, v):
        return [] if v is None else v


class RuleFileSpec(BaseModel):
    """Top level of a rule file."""

    model_config = ConfigDict(extra="forbid")

    groups: List[RuleGroupSpec] = Field(default_factory=list)

    @field_validator("groups", mode="before")
    @classmethod
    def _null_groups(cls, v):
        return [] if v is None else v
