"""Engine self-metrics: counters, gauges, histograms for rule evaluation.

Each scheduler owns its own CollectorRegistry so several engines (tests) can coexist.
Exposed over HTTP at /metrics.
"""

from __future__ import annotations

from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class EngineMetrics:
    """Instruments updated by rule groups, the scheduler and notifiers."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.rule_evaluations = Counter(
            "rule_evaluations_total", "Rule evaluations", ["group", "rule"], registry=self.registry
        )
        self.rule_evaluation_failures = Counter(
            "rule_evaluation_failures_total",
            "Failed rule evaluations",
            ["group", "rule", "reason"],
            registry=self.registry,
        )
        self.rule_evaluation_duration = Histogram(
            "rule_evaluation_duration_seconds",
            "Single rule evaluation latency",
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )
        self.group_iterations = Counter(
            "rule_group_iterations_total", "Completed group ticks", ["group"], registry=self.registry
        )
        self.group_missed_iterations = Counter(
            "rule_group_iterations_missed_total",
            "Group ticks skipped because the previous tick was still running",
            ["group"],
            registry=self.registry,
        )
        self.group_duration = Gauge(
            "rule_group_last_duration_seconds", "Duration of the last group tick", ["group"], registry=self.registry
        )
        self.group_last_evaluation = Gauge(
            "rule_group_last_evaluation_timestamp_seconds",
            "Scheduled timestamp of the last group tick",
            ["group"],
            registry=self.registry,
        )
        self.group_rules = Gauge("rule_group_rules", "Rules per group", ["group"], registry=self.registry)
        self.alerts = Gauge("alerts", "Alert instances by state", ["group", "rule", "state"], registry=self.registry)
        self.recorded_samples = Counter(
            "recorded_samples_total", "Samples written by recording rules", ["group", "rule"], registry=self.registry
        )
        self.notifications_sent = Counter(
            "notifications_sent_total", "Alert batches handed to notifiers", ["notifier"], registry=self.registry
        )
        self.notifications_failed = Counter(
            "notifications_failed_total", "Notifier failures", ["notifier"], registry=self.registry
        )
        self.reloads = Counter("rule_reloads_total", "Rule set reloads", ["result"], registry=self.registry)

    def forget_group(self, group: str, alert_rules: Iterable[str] = ()) -> None:
        """Drop gauges of a removed group so /metrics doesn't report stale values."""
        for gauge in (self.group_duration, self.group_last_evaluation, self.group_rules):
            try:
                gauge.remove(group)
            except KeyError:
                pass
        self.forget_group_rules(group, alert_rules)

    def forget_group_rules(self, group: str, alert_rules: Iterable[str]) -> None:
        for rule in alert_rules:
            for state in ("inactive", "pending", "firing"):
                try:
                    self.alerts.remove(group, rule, state)
                except KeyError:
                    pass
