from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.ruler.errors import ConfigError, SchedulerOverrunError
from src.ruler.services.alert_state import AlertState
from src.ruler.services.query_client import Sample
from src.ruler.services.scheduler import Scheduler, group_offset, next_aligned

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)

RULES = """
groups:
  - name: node
    interval: 1m
    rules:
      - alert: HighCPUUsage
        expr: cpu > 80
        for: 5m
        labels:
          severity: warning
      - alert: InstanceDown
        expr: up == 0
"""

RULES_WITH_EXTRA_GROUP = RULES + """
  - name: k8s
    interval: 30s
    rules:
      - record: pod:restarts:rate
        expr: rate(restarts[5m])
"""

RULES_CHANGED = """
groups:
  - name: node
    interval: 1m
    rules:
      - alert: HighCPUUsage
        expr: cpu > 80
        for: 5m
        labels:
          severity: warning
      - alert: InstanceDown
        expr: up == 0 and on() vector(1)
"""


def test_next_aligned():
    now = datetime(2024, 1, 1, 12, 0, 7, tzinfo=timezone.utc)
    assert next_aligned(now, timedelta(seconds=15)) == datetime(2024, 1, 1, 12, 0, 15, tzinfo=timezone.utc)
    assert next_aligned(T0, MINUTE) == T0
    assert next_aligned(now, MINUTE, offset=10) == datetime(2024, 1, 1, 12, 0, 10, tzinfo=timezone.utc)


def test_group_offset_is_stable_and_within_interval():
    interval = timedelta(seconds=30)
    assert group_offset("node", interval, stagger=False) == 0.0
    a = group_offset("node", interval, stagger=True)
    assert a == group_offset("node", interval, stagger=True)
    assert 0.0 <= a < 30.0


@pytest.fixture
def scheduler(ctx, clock, write_rules) -> Scheduler:
    path = write_rules(RULES)
    return Scheduler(ctx, rule_files=[path], clock=clock)


@pytest.mark.anyio
async def test_reload_loads_groups_and_schedules_aligned_ticks(scheduler, clock):
    clock.now = T0 + timedelta(seconds=20)
    plan = await scheduler.reload()

    assert [g.name for g in plan.added] == ["node"]
    assert scheduler.registry.generation == 1
    assert scheduler.next_tick("node") == T0 + MINUTE
    assert set(scheduler.store.partition("node")) == {"HighCPUUsage", "InstanceDown"}
    assert scheduler.metrics.registry.get_sample_value("rule_group_rules", {"group": "node"}) == 2.0


@pytest.mark.anyio
async def test_reload_keeps_state_of_unchanged_groups(scheduler, backend, write_rules):
    backend.set("cpu > 80", [Sample(labels={"instance": "a"}, value=95)])
    await scheduler.reload()
    node = scheduler.registry.get("node")
    await scheduler.run_once("node", T0)

    write_rules(RULES_WITH_EXTRA_GROUP)
    plan = await scheduler.reload()

    assert plan.unchanged == [node]
    assert [g.name for g in plan.added] == ["k8s"]
    assert scheduler.registry.get("node") is node

    await scheduler.run_once("node", T0 + 5 * MINUTE)
    (alert,) = [a for a in scheduler.store.snapshot() if a.rule == "HighCPUUsage"]
    assert alert.state is AlertState.firing
    assert alert.active_since == T0


@pytest.mark.anyio
async def test_reload_with_changed_rule_resolves_only_that_rule(scheduler, backend, notifier, write_rules):
    backend.set("cpu > 80", [Sample(labels={"instance": "a"}, value=95)])
    backend.set("up == 0", [Sample(labels={"instance": "b"}, value=0)])
    await scheduler.reload()
    await scheduler.run_once("node", T0)
    old = scheduler.registry.get("node")
    notifier.batches.clear()

    write_rules(RULES_CHANGED)
    plan = await scheduler.reload()

    (old_group, new_group) = plan.changed[0]
    assert old_group is old
    assert new_group.alert_states["HighCPUUsage"] is old.alert_states["HighCPUUsage"]

    resolved = notifier.transitions
    assert [(t.alert.rule, t.previous, t.alert.state) for t in resolved] == [
        ("InstanceDown", AlertState.firing, AlertState.inactive)
    ]
    assert scheduler.store.partition("node")["HighCPUUsage"].alerts()[0].state is AlertState.pending


@pytest.mark.anyio
async def test_reload_removing_group_resolves_its_alerts(scheduler, backend, notifier, write_rules):
    backend.set("up == 0", [Sample(labels={"instance": "b"}, value=0)])
    await scheduler.reload()
    await scheduler.run_once("node", T0)
    notifier.batches.clear()

    write_rules("groups: []\n")
    plan = await scheduler.reload()

    assert [g.name for g in plan.removed] == ["node"]
    assert scheduler.store.partition("node") is None
    assert scheduler.next_tick("node") is None
    assert scheduler.store.snapshot() == []
    (batch,) = notifier.batches
    assert batch.group == "node"
    assert [t.previous for t in batch.transitions] == [AlertState.firing]
    assert scheduler.metrics.registry.get_sample_value("rule_group_rules", {"group": "node"}) is None


@pytest.mark.anyio
async def test_invalid_reload_keeps_previous_rule_set(scheduler, write_rules):
    await scheduler.reload()
    registry = scheduler.registry

    write_rules("groups:\n  - name: node\n    rules:\n      - alert: A\n")
    with pytest.raises(ConfigError):
        await scheduler.reload()

    assert scheduler.registry is registry
    assert scheduler.metrics.registry.get_sample_value("rule_reloads_total", {"result": "failure"}) == 1.0
    assert scheduler.metrics.registry.get_sample_value("rule_reloads_total", {"result": "success"}) == 1.0


@pytest.mark.anyio
async def test_overrunning_tick_is_skipped_and_counted(scheduler, backend, clock):
    gate = asyncio.Event()

    async def blocked(at):
        await gate.wait()
        return []

    backend.set("cpu > 80", blocked)
    await scheduler.reload()
    assert scheduler.next_tick("node") == T0

    scheduler._dispatch_due(clock())
    task = scheduler._inflight["node"]
    await asyncio.sleep(0)
    assert scheduler.is_running("node")

    clock.advance(minutes=1)
    scheduler._dispatch_due(clock())
    node = scheduler.registry.get("node")
    assert node.missed_evaluations == 1
    assert scheduler.next_tick("node") == T0 + 2 * MINUTE
    with pytest.raises(SchedulerOverrunError):
        await scheduler.run_once("node")

    gate.set()
    await task
    assert node.evaluations == 1
    assert scheduler.metrics.registry.get_sample_value(
        "rule_group_iterations_missed_total", {"group": "node"}
    ) == 1.0


@pytest.mark.anyio
async def test_stalled_scheduler_evaluates_latest_slot(scheduler, backend, clock):
    await scheduler.reload()
    clock.advance(minutes=2, seconds=30)

    scheduler._dispatch_due(clock())
    await scheduler._inflight["node"]

    assert {at for _, at in backend.calls} == {T0 + 2 * MINUTE}
    assert scheduler.registry.get("node").missed_evaluations == 2
    assert scheduler.next_tick("node") == T0 + 3 * MINUTE


@pytest.mark.anyio
async def test_failure_in_one_group_does_not_affect_another(ctx, clock, backend, write_rules):
    path = write_rules(
        """
        groups:
          - name: a
            rules:
              - record: a:x
                expr: broken(
          - name: b
            rules:
              - record: b:x
                expr: up
        """
    )
    backend.set("broken(", RuntimeError("unexpected"))
    backend.set("up", [Sample(labels={"i": "1"}, value=1)])
    scheduler = Scheduler(ctx, rule_files=[path], clock=clock)
    await scheduler.reload()

    await asyncio.gather(scheduler.run_once("a", T0), scheduler.run_once("b", T0))

    assert scheduler.registry.get("a").health["a:x"].health == "err"
    assert scheduler.registry.get("b").health["b:x"].health == "ok"


@pytest.mark.anyio
async def test_concurrency_is_bounded(ctx, clock, backend, write_rules):
    path = write_rules(
        """
        groups:
          - name: first
            rules:
              - record: first:x
                expr: first
          - name: second
            rules:
              - record: second:x
                expr: second
        """
    )
    gate = asyncio.Event()

    async def blocked(at):
        await gate.wait()
        return []

    backend.set("first", blocked)
    scheduler = Scheduler(ctx, rule_files=[path], clock=clock, max_concurrency=1)
    await scheduler.reload()

    scheduler._dispatch_due(clock())
    tasks = list(scheduler._inflight.values())
    for _ in range(5):
        await asyncio.sleep(0)
    assert [expr for expr, _ in backend.calls] == ["first"]

    gate.set()
    await asyncio.gather(*tasks)
    assert sorted(expr for expr, _ in backend.calls) == ["first", "second"]


@pytest.mark.anyio
async def test_run_loop_evaluates_until_shutdown(ctx, backend, write_rules):
    path = write_rules(
        """
        groups:
          - name: fast
            interval: 100ms
            rules:
              - alert: Always
                expr: vector(1)
        """
    )
    backend.set("vector(1)", [Sample(labels={}, value=1)])
    scheduler = Scheduler(ctx, rule_files=[path])
    await scheduler.reload()

    shutdown = asyncio.Event()
    task = asyncio.create_task(scheduler.run(shutdown))
    await asyncio.sleep(0.45)
    shutdown.set()
    await asyncio.wait_for(task, timeout=2)

    group = scheduler.registry.get("fast")
    assert group.evaluations >= 2
    # Tick timestamps sit on 100ms boundaries.
    assert all(round(at.timestamp() * 1000) % 100 == 0 for _, at in backend.calls)
    assert scheduler.store.snapshot()[0].state is AlertState.firing
