from __future__ import annotations

import glob
import logging
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, List

import yaml
from pydantic import ValidationError

from src.ruler.errors import ConfigError
from src.ruler.schemas.rule_files import RuleFileSpec, RuleGroupSpec, RuleSpec
from src.ruler.services.rule_group import RuleGroup
from src.ruler.services.rules import AlertingRule, RecordingRule, Rule, parse_duration

logger = logging.getLogger(__name__)


def expand_rule_paths(patterns: Iterable[str]) -> List[str]:
    """Expand glob patterns; plain paths are kept even if missing so the error names them."""
    paths: List[str] = []
    for pattern in patterns:
        pattern = pattern.strip()
        if not pattern:
            continue
        if any(c in pattern for c in "*?["):
            paths.extend(sorted(glob.glob(pattern)))
        else:
            paths.append(pattern)
    # De-dupe while preserving order
    seen = set()
    return [p for p in paths if not (p in seen or seen.add(p))]


def _build_rule(spec: RuleSpec, where: str) -> Rule:
    if spec.record is not None:
        return RecordingRule(name=spec.record, expr=spec.expr, labels=dict(spec.labels))
    try:
        for_ = parse_duration(spec.for_)
    except ConfigError as exc:
        raise ConfigError(f"{where}: alert {spec.alert!r}: {exc}") from exc
    return AlertingRule(
        name=spec.alert or "",
        expr=spec.expr,
        for_=for_,
        labels=dict(spec.labels),
        annotations=dict(spec.annotations),
    )


def _build_group(spec: RuleGroupSpec, source_file: str, default_interval: timedelta) -> RuleGroup:
    where = f"{source_file}: group {spec.name!r}"
    try:
        interval = parse_duration(spec.interval, default=default_interval)
    except ConfigError as exc:
        raise ConfigError(f"{where}: interval: {exc}") from exc
    if interval.total_seconds() <= 0:
        raise ConfigError(f"{where}: interval must be positive")
    rules = [_build_rule(r, where) for r in spec.rules]
    return RuleGroup(name=spec.name, interval=interval, rules=rules, source_file=source_file)


# PUBLIC_INTERFACE
def parse_rule_file(text: str, source_file: str = "<string>") -> RuleFileSpec:
    """Parse and validate one rule file's YAML text."""
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{source_file}: invalid YAML: {exc}") from exc
    if raw is None:
        return RuleFileSpec()
    if not isinstance(raw, dict):
        raise ConfigError(f"{source_file}: top level must be a mapping with a 'groups' key")
    try:
        return RuleFileSpec.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"{source_file}: {exc}") from exc


# PUBLIC_INTERFACE
def load_rule_groups(patterns: Iterable[str], default_interval: timedelta) -> List[RuleGroup]:
    """
    Load every group from the given rule files (paths or globs).

    All-or-nothing: any invalid file or a group name used twice anywhere in the set raises
    ConfigError and nothing is returned.
    """
    groups: List[RuleGroup] = []
    owners: Dict[str, str] = {}
    for path in expand_rule_paths(patterns):
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"{path}: cannot read rule file: {exc}") from exc

        file_spec = parse_rule_file(text, path)
        for group_spec in file_spec.groups:
            if group_spec.name in owners:
                raise ConfigError(
                    f"{path}: group name {group_spec.name!r} already defined in {owners[group_spec.name]}"
                )
            owners[group_spec.name] = path
            groups.append(_build_group(group_spec, path, default_interval))

    logger.info("Loaded %d rule groups (%d rules)", len(groups), sum(len(g.rules) for g in groups))
    return groups
