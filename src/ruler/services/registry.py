from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from src.ruler.services.alert_state import AlertPartition
from src.ruler.services.rule_group import RuleGroup


@dataclass(frozen=True)
class RuleRegistry:
    """The live rule set. Never mutated; a reload builds a new registry and swaps it in."""

    generation: int = 0
    groups: Dict[str, RuleGroup] = field(default_factory=dict)
    files: Tuple[str, ...] = ()
    loaded_at: Optional[datetime] = None

    def get(self, name: str) -> Optional[RuleGroup]:
        return self.groups.get(name)

    def partitions(self) -> Dict[str, AlertPartition]:
        return {name: g.alert_states for name, g in self.groups.items()}

    def __len__(self) -> int:
        return len(self.groups)


@dataclass
class ReloadPlan:
    """Difference between the live registry and a freshly loaded rule set."""

    registry: RuleRegistry
    unchanged: List[RuleGroup] = field(default_factory=list)
    changed: List[Tuple[RuleGroup, RuleGroup]] = field(default_factory=list)  # (old, new)
    added: List[RuleGroup] = field(default_factory=list)
    removed: List[RuleGroup] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "unchanged": len(self.unchanged),
            "changed": len(self.changed),
            "added": len(self.added),
            "removed": len(self.removed),
        }


# PUBLIC_INTERFACE
def plan_reload(current: RuleRegistry, loaded: Sequence[RuleGroup], files: Sequence[str], now: datetime) -> ReloadPlan:
    """
    Match loaded groups against the live ones by name.

    Unchanged groups keep their live object (and with it their alert partition); changed
    groups get the new generation; the caller carries state over once in-flight ticks of
    the old generation have stopped.
    """
    groups: Dict[str, RuleGroup] = {}
    unchanged: List[RuleGroup] = []
    changed: List[Tuple[RuleGroup, RuleGroup]] = []
    added: List[RuleGroup] = []

    for group in loaded:
        old = current.groups.get(group.name)
        if old is not None and old.same_definition(group):
            groups[group.name] = old
            unchanged.append(old)
        elif old is not None:
            groups[group.name] = group
            changed.append((old, group))
        else:
            groups[group.name] = group
            added.append(group)

    removed = [g for name, g in current.groups.items() if name not in groups]
    registry = RuleRegistry(
        generation=current.generation + 1,
        groups=groups,
        files=tuple(files),
        loaded_at=now,
    )
    return ReloadPlan(registry=registry, unchanged=unchanged, changed=changed, added=added, removed=removed)
