from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from src.ruler.errors import QueryTimeoutError, RuleEvaluationError
from src.ruler.services.alert_state import Alert, AlertPartition, AlertState, AlertStateMachine, AlertTransition
from src.ruler.services.engine_metrics import EngineMetrics
from src.ruler.services.materializer import Materializer
from src.ruler.services.notifier import AlertNotifier, NotificationBatch
from src.ruler.services.query_client import QueryBackend, Sample
from src.ruler.services.rules import AlertingRule, RecordingRule, Rule

logger = logging.getLogger(__name__)


@dataclass
class RuleHealth:
    """Observability state of one rule, carried across reloads while the rule is unchanged."""

    health: str = "unknown"  # unknown | ok | err
    last_error: Optional[str] = None
    last_evaluation: Optional[datetime] = None
    evaluation_duration: float = 0.0
    failures: int = 0


@dataclass
class EvaluationContext:
    """Collaborators shared by all groups."""

    query: QueryBackend
    materializer: Materializer
    metrics: EngineMetrics
    notifiers: List[AlertNotifier] = field(default_factory=list)
    # None means "use the group's interval".
    query_timeout: Optional[timedelta] = None


def rule_keys(rules: Sequence[Rule]) -> List[str]:
    """Unique per-group key for each rule; repeated names get a #n suffix."""
    seen: Dict[str, int] = {}
    keys: List[str] = []
    for rule in rules:
        n = seen.get(rule.name, 0) + 1
        seen[rule.name] = n
        keys.append(rule.name if n == 1 else f"{rule.name}#{n}")
    return keys


class RuleGroup:
    """
    Ordered rules sharing an evaluation interval.

    Rules run sequentially. A recording rule's output is written before the next rule is
    queried, so later rules of the same tick can read it. A failing rule never stops the
    rest of the group.
    """

    def __init__(
        self,
        name: str,
        interval: timedelta,
        rules: Sequence[Rule],
        source_file: str = "",
    ):
        self.name = name
        self.interval = interval
        self.rules = tuple(rules)
        self.source_file = source_file
        self.keys = rule_keys(self.rules)

        self.alert_states: AlertPartition = {
            key: AlertStateMachine(name, rule)
            for key, rule in zip(self.keys, self.rules)
            if isinstance(rule, AlertingRule)
        }
        self.health: Dict[str, RuleHealth] = {key: RuleHealth() for key in self.keys}

        self.last_eval_time: Optional[datetime] = None
        self.last_duration: float = 0.0
        self.tick = 0
        self.evaluations = 0
        self.missed_evaluations = 0

    def __repr__(self) -> str:
        return f"RuleGroup(name={self.name!r}, interval={self.interval}, rules={len(self.rules)})"

    def same_definition(self, other: "RuleGroup") -> bool:
        return (
            self.name == other.name
            and self.interval == other.interval
            and self.source_file == other.source_file
            and self.rules == other.rules
        )

    # PUBLIC_INTERFACE
    def inherit(self, previous: "RuleGroup") -> None:
        """
        Carry state over from the previous generation of this group.

        Alert state machines and health are kept for rules whose definition is unchanged;
        machines of changed/removed rules stay with `previous` and are resolved by the caller.
        """
        old_rules = dict(zip(previous.keys, previous.rules))
        for key, rule in zip(self.keys, self.rules):
            if old_rules.get(key) != rule:
                continue
            if key in previous.alert_states:
                self.alert_states[key] = previous.alert_states[key]
            self.health[key] = previous.health[key]

        self.last_eval_time = previous.last_eval_time
        self.last_duration = previous.last_duration
        self.tick = previous.tick
        self.evaluations = previous.evaluations
        self.missed_evaluations = previous.missed_evaluations

    async def _query(self, rule: Rule, ts: datetime, ctx: EvaluationContext) -> List[Sample]:
        timeout = (ctx.query_timeout or self.interval).total_seconds()
        try:
            return await asyncio.wait_for(ctx.query.query(rule.expr, ts, timeout=timeout), timeout=max(0.001, timeout))
        except asyncio.TimeoutError as exc:
            raise QueryTimeoutError(f"query exceeded {timeout:g}s evaluation budget") from exc

    def _record_failure(self, ctx: EvaluationContext, key: str, rule: Rule, reason: str, message: str) -> None:
        health = self.health[key]
        health.health = "err"
        health.last_error = message
        health.failures += 1
        ctx.metrics.rule_evaluation_failures.labels(group=self.name, rule=rule.name, reason=reason).inc()

    async def _evaluate_rule(self, key: str, rule: Rule, ts: datetime, tick: int, ctx: EvaluationContext) -> List[AlertTransition]:
        samples = await self._query(rule, ts, ctx)
        if isinstance(rule, RecordingRule):
            written = await ctx.materializer.write(rule.name, samples, ts, rule.labels)
            ctx.metrics.recorded_samples.labels(group=self.name, rule=rule.name).inc(written)
            return []
        return self.alert_states[key].step(samples, ts, tick)

    # PUBLIC_INTERFACE
    async def evaluate(self, ts: datetime, ctx: EvaluationContext) -> List[AlertTransition]:
        """
        Run one tick at the interval-aligned timestamp `ts`.

        Returns the alert transitions of this tick (they are also handed to notifiers).
        """
        started = time.monotonic()
        self.tick += 1
        tick = self.tick
        transitions: List[AlertTransition] = []

        for key, rule in zip(self.keys, self.rules):
            health = self.health[key]
            rule_started = time.monotonic()
            ctx.metrics.rule_evaluations.labels(group=self.name, rule=rule.name).inc()
            try:
                transitions.extend(await self._evaluate_rule(key, rule, ts, tick, ctx))
            except RuleEvaluationError as exc:
                logger.warning(
                    "Rule evaluation failed group=%s rule=%s reason=%s: %s", self.name, rule.name, exc.reason, exc
                )
                self._record_failure(ctx, key, rule, exc.reason, str(exc))
            except Exception as exc:
                logger.exception("Unexpected error evaluating group=%s rule=%s", self.name, rule.name)
                self._record_failure(ctx, key, rule, "internal", f"internal error: {exc}")
            else:
                health.health = "ok"
                health.last_error = None
            finally:
                elapsed = time.monotonic() - rule_started
                health.last_evaluation = ts
                health.evaluation_duration = elapsed
                ctx.metrics.rule_evaluation_duration.observe(elapsed)

        self.last_eval_time = ts
        self.last_duration = time.monotonic() - started
        self.evaluations += 1

        ctx.metrics.group_iterations.labels(group=self.name).inc()
        ctx.metrics.group_duration.labels(group=self.name).set(self.last_duration)
        ctx.metrics.group_last_evaluation.labels(group=self.name).set(ts.timestamp())
        self._export_alert_counts(ctx)

        await self.notify(ts, transitions, ctx)
        return transitions

    def _export_alert_counts(self, ctx: EvaluationContext) -> None:
        tally: TallyCounter = TallyCounter()
        for machine in self.alert_states.values():
            for state in AlertState:
                tally[(machine.rule.name, state)] += 0
            for alert in machine.alerts():
                tally[(alert.rule, alert.state)] += 1
        for (rule_name, state), n in tally.items():
            ctx.metrics.alerts.labels(group=self.name, rule=rule_name, state=state.value).set(n)

    def firing(self) -> List[Alert]:
        return [a for m in self.alert_states.values() for a in m.firing()]

    async def notify(self, ts: datetime, transitions: Sequence[AlertTransition], ctx: EvaluationContext) -> None:
        """Hand transitions and currently firing alerts to every notifier."""
        firing = self.firing()
        if not transitions and not firing:
            return
        batch = NotificationBatch(
            group=self.name,
            interval=self.interval,
            ts=ts,
            transitions=tuple(transitions),
            firing=tuple(firing),
        )
        await dispatch_notifications(ctx, batch)


# PUBLIC_INTERFACE
async def dispatch_notifications(ctx: EvaluationContext, batch: NotificationBatch) -> None:
    """Send a batch to every notifier; one failing notifier doesn't stop the others."""
    for notifier in ctx.notifiers:
        try:
            await notifier.notify(batch)
            ctx.metrics.notifications_sent.labels(notifier=notifier.name).inc()
        except Exception:
            logger.exception("Notifier %s failed for group=%s", notifier.name, batch.group)
            ctx.metrics.notifications_failed.labels(notifier=notifier.name).inc()
