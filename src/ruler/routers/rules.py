from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from src.ruler.errors import ConfigError
from src.ruler.schemas.common import ErrorResponse
from src.ruler.schemas.rules import ReloadResponse, RuleGroupListResponse
from src.ruler.services import rules_service

router = APIRouter(tags=["Rules"])

_RULE_KINDS = {"alert": "alerting", "record": "recording"}


@router.get(
    "/api/v1/rules",
    response_model=RuleGroupListResponse,
    summary="List rule groups",
    description="List loaded rule groups with interval, last evaluation, and per-rule health and active alerts.",
    operation_id="list_rule_groups",
)
async def list_rule_groups(
    request: Request,
    rule_type: Optional[Literal["alert", "record"]] = Query(default=None, alias="type", description="alert|record"),
) -> RuleGroupListResponse:
    """List rule groups, optionally only alerting or only recording rules."""
    return rules_service.list_rule_groups(request, _RULE_KINDS.get(rule_type) if rule_type else None)


@router.post(
    "/-/reload",
    response_model=ReloadResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Reload rule files",
    description=(
        "Re-read the configured rule files. On any validation error the previous rule set stays active "
        "and the error is returned."
    ),
    operation_id="reload_rules",
)
async def reload_rules(request: Request) -> ReloadResponse:
    """Hot reload the rule set."""
    try:
        return await rules_service.reload_rules(request)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
