from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from src.ruler.errors import ConfigError, SchedulerOverrunError
from src.ruler.schemas.common import utc_now
from src.ruler.services.alert_state import AlertStateMachine, AlertStore, AlertTransition
from src.ruler.services.engine_metrics import EngineMetrics
from src.ruler.services.notifier import NotificationBatch
from src.ruler.services.registry import ReloadPlan, RuleRegistry, plan_reload
from src.ruler.services.rule_group import EvaluationContext, RuleGroup, dispatch_notifications
from src.ruler.services.rule_loader import expand_rule_paths, load_rule_groups

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Upper bound on one scheduler sleep; reloads wake the loop earlier.
_MAX_SLEEP_SEC = 60.0


def _alert_rule_names(group: RuleGroup) -> Set[str]:
    return {m.rule.name for m in group.alert_states.values()}


def group_offset(name: str, interval: timedelta, stagger: bool) -> float:
    """Deterministic per-group offset (seconds) within its interval; 0 when staggering is off."""
    if not stagger:
        return 0.0
    interval_ms = max(1, int(interval.total_seconds() * 1000))
    h = int(hashlib.sha256(name.encode("utf-8")).hexdigest()[:16], 16)
    return (h % interval_ms) / 1000.0


def next_aligned(now: datetime, interval: timedelta, offset: float = 0.0) -> datetime:
    """First slot k*interval + offset at or after `now` (wall-clock aligned)."""
    step = interval.total_seconds()
    k = math.ceil((now.timestamp() - offset) / step)
    return datetime.fromtimestamp(k * step + offset, tz=timezone.utc)


class Scheduler:
    """
    Drives every rule group on its own interval and owns the live rule set.

    - one scheduling loop; each due group tick runs as its own task, bounded by a semaphore
    - a group never has two ticks in flight: a tick that comes due while the previous one
      is still running is skipped and counted as missed
    - reload() swaps the registry and alert partitions, keeping state of unchanged groups
    """

    def __init__(
        self,
        ctx: EvaluationContext,
        *,
        rule_files: Sequence[str] = (),
        default_interval: timedelta = timedelta(seconds=15),
        max_concurrency: int = 4,
        stagger: bool = False,
        clock: Clock = utc_now,
    ):
        self.ctx = ctx
        self.rule_files = list(rule_files)
        self.default_interval = default_interval
        self.max_concurrency = max(1, int(max_concurrency))
        self.stagger = stagger
        self._clock = clock

        self.store = AlertStore()
        self.registry = RuleRegistry()

        self._pool = asyncio.Semaphore(self.max_concurrency)
        self._reload_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._inflight: Dict[str, asyncio.Task] = {}
        self._next_tick: Dict[str, datetime] = {}

    @property
    def metrics(self) -> EngineMetrics:
        return self.ctx.metrics

    def next_tick(self, name: str) -> Optional[datetime]:
        return self._next_tick.get(name)

    def is_running(self, name: str) -> bool:
        task = self._inflight.get(name)
        return task is not None and not task.done()

    def _first_tick(self, group: RuleGroup, now: datetime) -> datetime:
        return next_aligned(now, group.interval, group_offset(group.name, group.interval, self.stagger))

    # ---- reload ----

    async def _cancel(self, names: Sequence[str]) -> None:
        tasks = [self._inflight.pop(n) for n in names if n in self._inflight]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _resolve_dropped(self, dropped: List[AlertStateMachine], intervals: Dict[str, timedelta], now: datetime) -> None:
        by_group: Dict[str, List[AlertTransition]] = {}
        for machine in dropped:
            transitions = machine.resolve_all(now)
            if transitions:
                by_group.setdefault(machine.group, []).extend(transitions)
        for group, transitions in by_group.items():
            batch = NotificationBatch(
                group=group,
                interval=intervals.get(group, self.default_interval),
                ts=now,
                transitions=tuple(transitions),
            )
            await dispatch_notifications(self.ctx, batch)

    # PUBLIC_INTERFACE
    async def reload(self, rule_files: Optional[Sequence[str]] = None) -> ReloadPlan:
        """
        Load the rule files and make them the live rule set.

        Raises ConfigError (previous rule set stays active). Unchanged groups keep their
        alert state; removed groups and removed/changed rules have their alerts resolved;
        new groups start clean.
        """
        async with self._reload_lock:
            files = list(rule_files) if rule_files is not None else self.rule_files
            try:
                loaded = load_rule_groups(files, self.default_interval)
            except ConfigError:
                self.metrics.reloads.labels(result="failure").inc()
                logger.error("Rule reload failed; keeping generation %d", self.registry.generation, exc_info=True)
                raise

            now = self._clock()
            plan = plan_reload(self.registry, loaded, expand_rule_paths(files), now)

            # Old generations must stop before their state is handed over.
            stale = [old for old, _ in plan.changed] + plan.removed
            await self._cancel([g.name for g in stale])
            for old, new in plan.changed:
                new.inherit(old)

            dropped = self.store.swap(plan.registry.partitions())
            self.registry = plan.registry
            self.rule_files = files

            for old, new in plan.changed:
                if old.interval != new.interval or new.name not in self._next_tick:
                    self._next_tick[new.name] = self._first_tick(new, now)
            for group in plan.added:
                self._next_tick[group.name] = self._first_tick(group, now)
            for group in plan.removed:
                self._next_tick.pop(group.name, None)
                self.metrics.forget_group(group.name, _alert_rule_names(group))
            for old, new in plan.changed:
                gone = _alert_rule_names(old) - _alert_rule_names(new)
                if gone:
                    self.metrics.forget_group_rules(new.name, gone)
            for group in self.registry.groups.values():
                self.metrics.group_rules.labels(group=group.name).set(len(group.rules))

            intervals = {g.name: g.interval for g in stale}
            await self._resolve_dropped(dropped, intervals, now)

            self.metrics.reloads.labels(result="success").inc()
            logger.info("Rules reloaded: generation=%d %s", self.registry.generation, plan.summary())
            self._wakeup.set()
            return plan

    # ---- evaluation ----

    async def _run_tick(self, group: RuleGroup, ts: datetime) -> List[AlertTransition]:
        async with self._pool:
            try:
                return await group.evaluate(ts, self.ctx)
            except asyncio.CancelledError:
                logger.info("Tick cancelled group=%s ts=%s", group.name, ts.isoformat())
                raise
            except Exception:
                logger.exception("Group tick failed group=%s", group.name)
                return []

    def _start_tick(self, group: RuleGroup, ts: datetime) -> asyncio.Task:
        task = asyncio.create_task(self._run_tick(group, ts), name=f"rule-group:{group.name}")
        self._inflight[group.name] = task

        def _done(t: asyncio.Task, name: str = group.name) -> None:
            if self._inflight.get(name) is t:
                del self._inflight[name]

        task.add_done_callback(_done)
        return task

    def _record_missed(self, group: RuleGroup, count: int, why: str) -> None:
        group.missed_evaluations += count
        self.metrics.group_missed_iterations.labels(group=group.name).inc(count)
        logger.warning("%s", SchedulerOverrunError(f"group={group.name} skipped {count} evaluation(s): {why}"))

    def _dispatch_due(self, now: datetime) -> None:
        for group in list(self.registry.groups.values()):
            due = self._next_tick.get(group.name)
            if due is None:
                self._next_tick[group.name] = self._first_tick(group, now)
                continue
            if now < due:
                continue

            # Evaluate only the latest due slot after a stall.
            behind = int((now - due) / group.interval)
            ts = due + behind * group.interval
            self._next_tick[group.name] = ts + group.interval
            if behind:
                self._record_missed(group, behind, "scheduler fell behind")

            if self.is_running(group.name):
                self._record_missed(group, 1, "previous tick still running")
                continue
            self._start_tick(group, ts)

    def _seconds_until_next(self, now: datetime) -> float:
        if not self._next_tick:
            return _MAX_SLEEP_SEC
        soonest = min(self._next_tick.values())
        return min(_MAX_SLEEP_SEC, max(0.0, (soonest - now).total_seconds()))

    async def _sleep(self, shutdown_event: asyncio.Event, timeout: float) -> None:
        waiters = [
            asyncio.ensure_future(shutdown_event.wait()),
            asyncio.ensure_future(self._wakeup.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()

    # PUBLIC_INTERFACE
    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        Background loop dispatching group ticks until shutdown_event is set.

        In-flight ticks are cancelled on the way out; already written recording rule output
        is not rolled back.
        """
        logger.info(
            "Rule scheduler started (groups=%d, max_concurrency=%d, stagger=%s)",
            len(self.registry),
            self.max_concurrency,
            self.stagger,
        )
        while not shutdown_event.is_set():
            self._wakeup.clear()
            try:
                self._dispatch_due(self._clock())
            except Exception:
                logger.exception("Scheduler dispatch failed")
            await self._sleep(shutdown_event, self._seconds_until_next(self._clock()))

        await self.close()
        logger.info("Rule scheduler stopped")

    # PUBLIC_INTERFACE
    async def run_once(self, name: str, ts: Optional[datetime] = None) -> List[AlertTransition]:
        """Evaluate one group now (manual trigger). Refuses to overlap a running tick."""
        group = self.registry.get(name)
        if group is None:
            raise KeyError(name)
        if self.is_running(name):
            raise SchedulerOverrunError(f"group={name} has a tick in flight")
        return await self._start_tick(group, ts or self._clock())

    async def close(self) -> None:
        """Cancel every in-flight tick."""
        await self._cancel(list(self._inflight))
