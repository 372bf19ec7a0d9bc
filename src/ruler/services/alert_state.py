from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import RLock
from typing import Dict, Iterable, List, Optional, Tuple

from src.ruler.errors import DuplicateLabelSetError
from src.ruler.services.query_client import LabelKey, Labels, Sample, fingerprint, label_key
from src.ruler.services.rules import AlertingRule
from src.ruler.services.templates import render_all

logger = logging.getLogger(__name__)


class AlertState(str, Enum):
    """Lifecycle state of one alert instance."""

    inactive = "inactive"
    pending = "pending"
    firing = "firing"


@dataclass
class AlertInstance:
    """Mutable per-label-set state. Owned by exactly one AlertStateMachine."""

    labels: Labels
    state: AlertState
    active_since: datetime
    value: float = 0.0
    annotations: Dict[str, str] = field(default_factory=dict)
    fired_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    # Tick number at which the instance went inactive; it is dropped on the next tick.
    resolved_tick: Optional[int] = None


@dataclass(frozen=True)
class Alert:
    """Immutable snapshot of an alert instance handed to notifiers and the API."""

    group: str
    rule: str
    labels: Labels
    annotations: Dict[str, str]
    state: AlertState
    active_since: datetime
    value: float
    fired_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.labels)


@dataclass(frozen=True)
class AlertTransition:
    """An alert whose state changed during a tick."""

    alert: Alert
    previous: AlertState


class AlertStateMachine:
    """
    Tracks every alert instance of one alerting rule across ticks.

    Per tick (step):
    - new label set -> pending (or firing right away when for == 0)
    - pending for at least `for` -> firing
    - firing label set missing -> inactive with resolved_at, kept for one more tick
    - pending label set missing -> dropped, it never fired
    """

    def __init__(self, group: str, rule: AlertingRule):
        self.group = group
        self.rule = rule
        self._instances: Dict[LabelKey, AlertInstance] = {}

    def _snapshot(self, inst: AlertInstance) -> Alert:
        return Alert(
            group=self.group,
            rule=self.rule.name,
            labels=dict(inst.labels),
            annotations=dict(inst.annotations),
            state=inst.state,
            active_since=inst.active_since,
            value=inst.value,
            fired_at=inst.fired_at,
            resolved_at=inst.resolved_at,
        )

    def _result_set(self, samples: Iterable[Sample]) -> Dict[LabelKey, Tuple[Labels, float]]:
        current: Dict[LabelKey, Tuple[Labels, float]] = {}
        for sample in samples:
            labels = self.rule.alert_labels(sample.labels)
            key = label_key(labels)
            if key in current:
                raise DuplicateLabelSetError(
                    f"vector contains metrics with the same labelset after applying alert labels: {labels}"
                )
            current[key] = (labels, float(sample.value))
        return current

    # PUBLIC_INTERFACE
    def step(self, samples: Iterable[Sample], now: datetime, tick: int) -> List[AlertTransition]:
        """Apply one tick's result set. Raises DuplicateLabelSetError before touching any state."""
        current = self._result_set(samples)
        transitions: List[AlertTransition] = []

        for key, (labels, value) in current.items():
            inst = self._instances.get(key)
            previous: Optional[AlertState] = None

            if inst is None or inst.state is AlertState.inactive:
                # A resolved instance that matches again starts a new lifecycle.
                previous = AlertState.inactive
                inst = AlertInstance(labels=labels, state=AlertState.pending, active_since=now)
                self._instances[key] = inst
                if self.rule.for_.total_seconds() <= 0:
                    inst.state = AlertState.firing
                    inst.fired_at = now
            elif inst.state is AlertState.pending and now - inst.active_since >= self.rule.for_:
                previous = AlertState.pending
                inst.state = AlertState.firing
                inst.fired_at = now

            inst.value = value
            inst.annotations = render_all(self.rule.annotations, labels, value)
            if previous is not None:
                transitions.append(AlertTransition(alert=self._snapshot(inst), previous=previous))

        for key, inst in list(self._instances.items()):
            if key in current:
                continue
            if inst.state is AlertState.pending:
                del self._instances[key]
                inst.state = AlertState.inactive
                transitions.append(AlertTransition(alert=self._snapshot(inst), previous=AlertState.pending))
            elif inst.state is AlertState.firing:
                inst.state = AlertState.inactive
                inst.resolved_at = now
                inst.resolved_tick = tick
                transitions.append(AlertTransition(alert=self._snapshot(inst), previous=AlertState.firing))
            elif inst.resolved_tick is None or tick > inst.resolved_tick:
                del self._instances[key]

        return transitions

    # PUBLIC_INTERFACE
    def resolve_all(self, now: datetime) -> List[AlertTransition]:
        """Resolve every instance (rule or group removed). The machine is empty afterwards."""
        transitions: List[AlertTransition] = []
        for inst in self._instances.values():
            if inst.state is AlertState.inactive:
                continue
            previous = inst.state
            inst.state = AlertState.inactive
            if previous is AlertState.firing:
                inst.resolved_at = now
            transitions.append(AlertTransition(alert=self._snapshot(inst), previous=previous))
        self._instances.clear()
        return transitions

    def alerts(self) -> List[Alert]:
        return [self._snapshot(inst) for inst in self._instances.values()]

    def firing(self) -> List[Alert]:
        return [self._snapshot(inst) for inst in self._instances.values() if inst.state is AlertState.firing]

    def __len__(self) -> int:
        return len(self._instances)


AlertPartition = Dict[str, AlertStateMachine]


class AlertStore:
    """
    All alert state machines, partitioned by rule group name.

    A group's tick mutates only its own partition and takes no lock. Adding/removing
    partitions (reload) and cross-partition reads take the store lock.
    """

    def __init__(self):
        self._partitions: Dict[str, AlertPartition] = {}
        self._lock = RLock()

    def partition(self, group: str) -> Optional[AlertPartition]:
        with self._lock:
            return self._partitions.get(group)

    # PUBLIC_INTERFACE
    def swap(self, partitions: Dict[str, AlertPartition]) -> List[AlertStateMachine]:
        """
        Replace the partition map. Returns machines that were live before and are no
        longer referenced by any new partition (their alerts must be resolved by the caller).
        """
        with self._lock:
            old = self._partitions
            self._partitions = dict(partitions)
            kept = {id(m) for p in self._partitions.values() for m in p.values()}
            return [m for p in old.values() for m in p.values() if id(m) not in kept]

    def snapshot(self) -> List[Alert]:
        with self._lock:
            machines = [m for p in self._partitions.values() for m in p.values()]
        out: List[Alert] = []
        for m in machines:
            out.extend(m.alerts())
        return out
