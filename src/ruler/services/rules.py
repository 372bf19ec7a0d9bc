from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Union

from src.ruler.errors import ConfigError
from src.ruler.services.query_client import METRIC_NAME_LABEL, Labels

ALERT_NAME_LABEL = "alertname"

_DURATION_RE = re.compile(
    r"^(?:(?P<y>\d+)y)?(?:(?P<w>\d+)w)?(?:(?P<d>\d+)d)?(?:(?P<h>\d+)h)?"
    r"(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?(?:(?P<ms>\d+)ms)?$"
)
_UNIT_MS = {
    "y": 365 * 24 * 3600 * 1000,
    "w": 7 * 24 * 3600 * 1000,
    "d": 24 * 3600 * 1000,
    "h": 3600 * 1000,
    "m": 60 * 1000,
    "s": 1000,
    "ms": 1,
}


# PUBLIC_INTERFACE
def parse_duration(raw: Union[str, int, None], default: timedelta = timedelta(0)) -> timedelta:
    """
    Parse a Prometheus duration ("5m", "1h30m", "250ms", "0").

    None means "not set" and returns the default. Bare integers other than 0 are rejected,
    as in Prometheus rule files.
    """
    if raw is None:
        return default
    text = str(raw).strip()
    if text == "0":
        return timedelta(0)
    m = _DURATION_RE.match(text) if text else None
    if not m or not any(m.groupdict().values()):
        raise ConfigError(f"invalid duration {raw!r}")
    total_ms = sum(int(v) * _UNIT_MS[unit] for unit, v in m.groupdict().items() if v)
    return timedelta(milliseconds=total_ms)


def format_duration(d: timedelta) -> str:
    """Inverse of parse_duration for display ("1h5m", "15s", "0s")."""
    total_ms = int(round(d.total_seconds() * 1000))
    if total_ms == 0:
        return "0s"
    out = []
    for unit in ("y", "w", "d", "h", "m", "s", "ms"):
        n, total_ms = divmod(total_ms, _UNIT_MS[unit])
        if n:
            out.append(f"{n}{unit}")
    return "".join(out)


def merge_labels(query_labels: Labels, static_labels: Dict[str, str]) -> Labels:
    """
    Merge rule static labels onto an expression's labels.

    Expression-produced labels win on name conflicts. The expression's metric name is
    dropped; callers set their own identity label.
    """
    merged = dict(static_labels)
    for k, v in query_labels.items():
        if k == METRIC_NAME_LABEL:
            continue
        merged[k] = v
    return merged


@dataclass(frozen=True)
class AlertingRule:
    """Alerting rule: result label sets define currently matching alerts."""

    name: str
    expr: str
    for_: timedelta = timedelta(0)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    kind = "alerting"

    def alert_labels(self, query_labels: Labels) -> Labels:
        """Full identity label set of one alert instance."""
        merged = merge_labels(query_labels, self.labels)
        merged[ALERT_NAME_LABEL] = self.name
        return merged


@dataclass(frozen=True)
class RecordingRule:
    """Recording rule: result is persisted as a new series named `name`."""

    name: str
    expr: str
    labels: Dict[str, str] = field(default_factory=dict)

    kind = "recording"


Rule = Union[AlertingRule, RecordingRule]
