from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Request

from src.ruler.schemas.rules import ReloadResponse, RuleGroupListResponse, RuleGroupOut, RuleOut
from src.ruler.services.alerts_service import alert_to_out
from src.ruler.services.rule_group import RuleGroup
from src.ruler.services.rules import AlertingRule
from src.ruler.services.scheduler import Scheduler
from src.ruler.state import get_state

logger = logging.getLogger(__name__)


def _group_to_out(group: RuleGroup, scheduler: Scheduler, rule_type: Optional[str]) -> RuleGroupOut:
    rules: List[RuleOut] = []
    for key, rule in zip(group.keys, group.rules):
        if rule_type and rule.kind != rule_type:
            continue
        health = group.health[key]
        out = RuleOut(
            name=rule.name,
            query=rule.expr,
            type=rule.kind,
            labels=dict(rule.labels),
            health=health.health,
            lastError=health.last_error,
            lastEvaluation=health.last_evaluation,
            evaluationTime=health.evaluation_duration,
        )
        if isinstance(rule, AlertingRule):
            out.duration = rule.for_.total_seconds()
            out.annotations = dict(rule.annotations)
            out.alerts = [alert_to_out(a) for a in group.alert_states[key].alerts()]
        rules.append(out)

    return RuleGroupOut(
        name=group.name,
        file=group.source_file,
        interval=group.interval.total_seconds(),
        lastEvaluation=group.last_eval_time,
        evaluationTime=group.last_duration,
        evaluations=group.evaluations,
        missedEvaluations=group.missed_evaluations,
        nextEvaluation=scheduler.next_tick(group.name),
        rules=rules,
    )


# PUBLIC_INTERFACE
def list_rule_groups(request: Request, rule_type: Optional[str] = None) -> RuleGroupListResponse:
    """Live rule groups with per-rule health. rule_type filters rules: alerting | recording."""
    scheduler = get_state(request.app).engine.scheduler
    registry = scheduler.registry
    groups = [_group_to_out(g, scheduler, rule_type) for g in registry.groups.values()]
    if rule_type:
        groups = [g for g in groups if g.rules]
    return RuleGroupListResponse(
        generation=registry.generation,
        loadedAt=registry.loaded_at,
        groups=groups,
        total=len(groups),
    )


# PUBLIC_INTERFACE
async def reload_rules(request: Request) -> ReloadResponse:
    """Hot reload from the configured rule files. Propagates ConfigError."""
    scheduler = get_state(request.app).engine.scheduler
    plan = await scheduler.reload()
    return ReloadResponse(generation=plan.registry.generation, **plan.summary())
